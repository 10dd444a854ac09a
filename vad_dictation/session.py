"""Session coordinator: capture lifecycle, segment dispatch, and finalize."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from vad_dictation._types import (
    AudioFrame,
    CaptureError,
    CleanupError,
    EncodedChunk,
    HotkeyPermissionError,
    Segment,
)
from vad_dictation.assembler import SegmentAssembler
from vad_dictation.capture import CaptureSource
from vad_dictation.cleanup import TextCleaner
from vad_dictation.config import EndpointConfig
from vad_dictation.endpoint import EndpointDetector
from vad_dictation.events import (
    CancelRequested,
    EventChannel,
    NewlineRequested,
    QuitRequested,
    SpeechEnd,
    StateChanged,
    Trigger,
    Waveform,
)
from vad_dictation.hotkey import ComboHotkeyListener, HotkeyListener
from vad_dictation.injector import InjectionError, Injector
from vad_dictation.transcriber import Transcriber
from vad_dictation.transcript import TranscriptBuffer

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Coordinator state."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    ERROR = "error"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class _Session:
    """Everything owned by one capture session.

    Mutated only on the event loop thread; ``finalized`` is set before the
    finalize task is created so a second stop can never schedule another.
    ``cancel()`` and ``shutdown()`` set it too, so results that settle
    afterwards are dropped and no finalize is scheduled for the session.
    The session stays attached to the coordinator until finalize returns.
    """

    generation: int
    transcript: TranscriptBuffer = field(default_factory=TranscriptBuffer)
    pending: int = 0
    stop_requested: bool = False
    finalized: bool = False
    next_sequence: int = 0
    settled: dict[int, str | None] = field(default_factory=dict)
    tasks: set[asyncio.Task] = field(default_factory=set)
    finalize_task: asyncio.Task | None = None


class SessionCoordinator:
    """Owns session state and the count of in-flight transcription calls.

    IDLE -> RECORDING on start, RECORDING -> PROCESSING on stop, and
    PROCESSING -> IDLE once every dispatched segment has settled and the
    transcript was handed to cleanup and insertion. Results are appended in
    detection order regardless of which call finishes first.
    """

    def __init__(
        self,
        capture: CaptureSource,
        transcriber: Transcriber,
        injector: Injector,
        cleaner: TextCleaner | None = None,
        channel: EventChannel | None = None,
        hotkey: HotkeyListener | ComboHotkeyListener | None = None,
        endpoint_config: EndpointConfig | None = None,
        language_hint: str | None = None,
        publish_waveform: bool = False,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        """Initialize coordinator with its collaborators.

        Args:
            capture: Microphone capture source
            transcriber: Per-segment transcription backend
            injector: Text insertion backend
            cleaner: Optional transcript cleanup at finalize
            channel: Event channel for triggers and notifications
            hotkey: Optional global hotkey listener publishing Trigger events
            endpoint_config: Endpointing thresholds
            language_hint: Language passed to every transcription call
            publish_waveform: Publish Waveform events for level displays
            clock: Millisecond clock matching capture frame timestamps
        """
        self.capture = capture
        self.transcriber = transcriber
        self.injector = injector
        self.cleaner = cleaner
        self.channel = channel or EventChannel()
        self.hotkey = hotkey
        self.language_hint = language_hint
        self.publish_waveform = publish_waveform
        self._clock = clock

        self.detector = EndpointDetector(
            endpoint_config,
            on_speech_start=self.channel.publish,
            on_speech_end=self._on_speech_end,
        )
        self.assembler = SegmentAssembler(media_type=capture.media_type)

        self.state = SessionState.IDLE
        self.error: str | None = None
        self.last_text: str | None = None
        self._session: _Session | None = None
        self._generation = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutdown = False

        logger.info("SessionCoordinator initialized in IDLE state")

    @property
    def pending(self) -> int:
        """Number of transcription calls still in flight for the active session."""
        return self._session.pending if self._session else 0

    @property
    def transcript(self) -> str:
        return self._session.transcript.text if self._session else ""

    def _set_state(self, state: SessionState, error: str | None = None) -> None:
        if state is not self.state:
            logger.info("State transition: %s -> %s", self.state.name, state.name)
        self.state = state
        self.error = error
        if state in (SessionState.IDLE, SessionState.ERROR):
            self._idle.set()
        else:
            self._idle.clear()
        self.channel.publish(StateChanged(state=state.value, error=error))

    async def wait_idle(self) -> None:
        """Wait until the current session has fully finalized or been dropped."""
        await self._idle.wait()

    async def startup(self) -> None:
        """Install the hotkey listener; the manual path works without it."""
        if self.hotkey is None:
            return
        try:
            self.hotkey.start()
        except HotkeyPermissionError as e:
            logger.warning("Hotkey unavailable, use manual control instead: %s", e)
            self.hotkey = None

    async def run(self) -> None:
        """Consume triggers and manual commands until quit or channel close."""
        logger.info("Session coordinator event loop starting")
        await self.startup()

        try:
            async for event in self.channel.listen(
                Trigger, NewlineRequested, CancelRequested, QuitRequested
            ):
                if isinstance(event, QuitRequested):
                    logger.info("Quit requested, exiting event loop")
                    break
                try:
                    if isinstance(event, Trigger):
                        await self.toggle()
                    elif isinstance(event, NewlineRequested):
                        self.add_newline()
                    elif isinstance(event, CancelRequested):
                        self.cancel()
                except CaptureError as e:
                    logger.error("Could not start recording: %s", e)
        finally:
            await self.shutdown()

    async def toggle(self) -> None:
        """Start when idle, stop when recording; ignored while processing."""
        if self.state is SessionState.RECORDING:
            await self.stop()
        elif self.state is SessionState.PROCESSING:
            logger.info("Still processing previous session, toggle ignored")
        else:
            await self.start()

    async def start(self) -> None:
        """Open the capture source and begin a new session.

        Raises:
            CaptureError: If the microphone cannot be opened
        """
        if self.state in (SessionState.RECORDING, SessionState.PROCESSING):
            logger.warning("Start requested while %s, ignoring", self.state.value)
            return

        self._generation += 1
        session = _Session(generation=self._generation)
        self.detector.reset()
        self.assembler.reset()
        self.last_text = None

        try:
            self.capture.start(
                on_frame=self._on_frame,
                on_chunk=self._on_chunk,
                on_waveform=self._on_waveform if self.publish_waveform else None,
            )
        except CaptureError as e:
            logger.error("Failed to start capture: %s", e)
            self._set_state(SessionState.ERROR, str(e))
            raise

        self._session = session
        self._set_state(SessionState.RECORDING)

    async def stop(self) -> None:
        """Stop capturing and finalize once outstanding calls settle."""
        session = self._session
        if self.state is not SessionState.RECORDING or session is None:
            logger.debug("Stop requested while %s, ignoring", self.state.value)
            return

        self.capture.stop()
        session.stop_requested = True
        self._set_state(SessionState.PROCESSING)
        self.detector.force_complete(self._clock())

        if session.pending == 0:
            self._schedule_finalize(session)
        else:
            logger.info(
                "Waiting for %d pending transcription(s) before finalizing",
                session.pending,
            )

    def cancel(self) -> None:
        """Discard the session without cleanup or insertion.

        Works while recording or processing, including a finalize that is
        already waiting on cleanup or insertion.
        """
        session = self._session
        if session is None:
            return

        if self.state is SessionState.RECORDING:
            self.capture.stop()
        self.detector.reset()
        session.finalized = True
        session.transcript.clear()
        if session.finalize_task is not None:
            session.finalize_task.cancel()
        self._session = None
        logger.info(
            "Session cancelled (%d transcription(s) left to settle unused)",
            session.pending,
        )
        self._set_state(SessionState.IDLE)

    def add_newline(self) -> None:
        """Append an explicit line break to the transcript."""
        if self.state is not SessionState.RECORDING or self._session is None:
            return
        self._session.transcript.add_newline()

    def _on_frame(self, frame: AudioFrame) -> None:
        if self.state is SessionState.RECORDING:
            self.detector.process_frame(frame)

    def _on_chunk(self, chunk: EncodedChunk) -> None:
        if self.state is not SessionState.RECORDING:
            return
        self.assembler.capture_header(chunk)
        self.detector.push_chunk(chunk)

    def _on_waveform(self, data: tuple[float, ...]) -> None:
        self.channel.publish(Waveform(data=data))

    def _on_speech_end(self, event: SpeechEnd) -> None:
        self.channel.publish(event)
        session = self._session
        if session is None:
            return
        segment = self.assembler.assemble(event.chunks)
        if segment is None:
            return
        self._dispatch(session, segment)

    def _dispatch(self, session: _Session, segment: Segment) -> None:
        session.pending += 1
        task = asyncio.create_task(self._transcribe(session, segment))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        logger.debug(
            "Dispatched segment #%d (%d bytes), %d pending",
            segment.sequence,
            len(segment.data),
            session.pending,
        )

    async def _transcribe(self, session: _Session, segment: Segment) -> None:
        text: str | None = None
        try:
            result = await self.transcriber.transcribe(segment, language=self.language_hint)
            text = result.text
            logger.info("Segment #%d transcribed: %d characters", segment.sequence, len(text))
            logger.debug("Segment #%d text: %s", segment.sequence, text)
        except Exception as e:
            logger.warning(
                "Segment #%d transcription failed (%s: %s), skipping",
                segment.sequence,
                type(e).__name__,
                e,
            )
        finally:
            self._settle(session, segment.sequence, text)

        if session.stop_requested and session.pending == 0:
            self._schedule_finalize(session)

    def _settle(self, session: _Session, sequence: int, text: str | None) -> None:
        """Release a pending slot and append every result that is now in order."""
        session.settled[sequence] = text
        while session.next_sequence in session.settled:
            ready = session.settled.pop(session.next_sequence)
            session.next_sequence += 1
            if ready and not session.finalized and session.generation == self._generation:
                session.transcript.append(ready)
        session.pending -= 1

    def _schedule_finalize(self, session: _Session) -> None:
        if session.finalized:
            return
        session.finalized = True
        session.finalize_task = asyncio.create_task(self._finalize(session))

    async def _finalize(self, session: _Session) -> None:
        """Hand the transcript to cleanup and insertion, then return to IDLE."""
        text = session.transcript.final_text()
        session.transcript.clear()

        if not text:
            logger.info("Empty transcript, nothing to insert")
            self._release(session, SessionState.IDLE)
            return

        final_text = text
        if self.cleaner is not None:
            try:
                final_text = await self.cleaner.cleanup(text)
            except CleanupError as e:
                logger.warning("Cleanup failed (%s), using raw transcript", e)
            except Exception as e:
                logger.error("Unexpected cleanup error: %s", e, exc_info=True)

        self.last_text = final_text
        try:
            await self.injector.inject_text(final_text)
        except InjectionError as e:
            logger.error("Text insertion failed: %s", e)
            self._release(session, SessionState.ERROR, str(e))
            return

        logger.info("Inserted %d characters", len(final_text))
        self._release(session, SessionState.IDLE)

    def _release(self, session: _Session, state: SessionState, error: str | None = None) -> None:
        if self._session is session:
            self._session = None
        self._set_state(state, error)

    async def shutdown(self) -> None:
        """Stop capture, cancel outstanding work, and release collaborators."""
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("Session coordinator shutdown starting")

        self.capture.close()

        session = self._session
        if session is not None:
            session.finalized = True
            tasks = list(session.tasks)
            if session.finalize_task is not None:
                tasks.append(session.finalize_task)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._session = None
            self._set_state(SessionState.IDLE)

        if self.hotkey is not None:
            try:
                await self.hotkey.stop()
            except Exception as e:
                logger.warning("Error stopping hotkey listener: %s", e)

        for name, component in (("transcriber", self.transcriber), ("cleaner", self.cleaner)):
            if component is None:
                continue
            try:
                await component.shutdown()
            except Exception as e:
                logger.warning("Error shutting down %s: %s", name, e)

        self.channel.close()
        logger.info("Session coordinator shutdown complete")
