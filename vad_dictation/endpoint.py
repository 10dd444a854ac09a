"""Energy-threshold endpointing of the capture stream."""

import logging
from enum import Enum
from typing import Callable

import numpy as np

from vad_dictation._types import AudioFrame, EncodedChunk
from vad_dictation.config import EndpointConfig
from vad_dictation.events import SpeechEnd, SpeechStart

logger = logging.getLogger(__name__)


class EndpointState(Enum):
    """Endpoint detector state."""

    SILENT = "silent"
    SPEAKING = "speaking"


def frame_amplitude(samples) -> float:
    """Mean absolute normalized amplitude of a window of samples.

    Float samples are expected in [-1, 1]. Unsigned 8-bit samples are
    centred on 128 and scaled to the same range.

    Args:
        samples: numpy array or sequence of samples

    Returns:
        Scalar amplitude in [0, 1]; 0.0 for an empty window
    """
    data = np.asarray(samples)
    if data.size == 0:
        return 0.0
    if data.dtype == np.uint8:
        data = (data.astype(np.float32) - 128.0) / 128.0
    return float(np.mean(np.abs(data)))


class EndpointDetector:
    """Classifies frames as speech or silence and emits utterance boundaries.

    Chunks pushed while speaking are buffered and handed out with
    SpeechEnd once a long enough silence follows a long enough speech run.
    Short utterances are discarded silently.
    """

    def __init__(
        self,
        config: EndpointConfig | None = None,
        on_speech_start: Callable[[SpeechStart], None] | None = None,
        on_speech_end: Callable[[SpeechEnd], None] | None = None,
    ):
        """Initialize endpoint detector.

        Args:
            config: Threshold and timing settings
            on_speech_start: Called when a speaking run begins
            on_speech_end: Called with the buffered chunks of an accepted utterance
        """
        self.config = config or EndpointConfig()
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end

        self.state = EndpointState.SILENT
        self._speech_start_ms = 0.0
        self._silence_start_ms: float | None = None
        self._chunks: list[EncodedChunk] = []

        logger.debug(
            "EndpointDetector initialized: threshold=%.4f, silence=%dms, min_speech=%dms",
            self.config.silence_threshold,
            self.config.silence_duration_ms,
            self.config.min_speech_duration_ms,
        )

    @property
    def is_speaking(self) -> bool:
        return self.state is EndpointState.SPEAKING

    @property
    def buffered_chunks(self) -> tuple[EncodedChunk, ...]:
        return tuple(self._chunks)

    def push_chunk(self, chunk: EncodedChunk) -> None:
        """Buffer an encoded chunk for the current utterance.

        Chunks arriving while silent are dropped; the stream header is kept
        by the segment assembler, not here.
        """
        if self.state is EndpointState.SILENT:
            return
        self._chunks.append(chunk)

    def process_frame(self, frame: AudioFrame) -> None:
        """Advance the state machine by one amplitude frame."""
        now = frame.timestamp_ms
        is_silent = frame.amplitude < self.config.silence_threshold

        if self.state is EndpointState.SILENT:
            if not is_silent:
                self._begin_speech(now)
            return

        if not is_silent:
            self._silence_start_ms = None
            return

        if self._silence_start_ms is None:
            self._silence_start_ms = now
            return

        if now - self._silence_start_ms < self.config.silence_duration_ms:
            return

        speech_duration = self._silence_start_ms - self._speech_start_ms
        if speech_duration >= self.config.min_speech_duration_ms:
            self._complete(now, forced=False)
        else:
            logger.debug(
                "Discarding %.0fms utterance (minimum %dms), %d chunks dropped",
                speech_duration,
                self.config.min_speech_duration_ms,
                len(self._chunks),
            )
            self.reset()

    def force_complete(self, now_ms: float) -> None:
        """Flush the utterance in progress on an external stop.

        The buffered utterance is only emitted when it already meets the
        minimum speech duration; otherwise it is discarded.
        """
        if self.state is not EndpointState.SPEAKING:
            return

        elapsed = now_ms - self._speech_start_ms
        if self._chunks and elapsed >= self.config.min_speech_duration_ms:
            self._complete(now_ms, forced=True)
        else:
            logger.debug("Forced completion discarded %.0fms utterance", elapsed)
            self.reset()

    def reset(self) -> None:
        """Return to SILENT and drop buffered chunks."""
        self.state = EndpointState.SILENT
        self._speech_start_ms = 0.0
        self._silence_start_ms = None
        self._chunks = []

    def _begin_speech(self, now: float) -> None:
        self.state = EndpointState.SPEAKING
        self._speech_start_ms = now
        self._silence_start_ms = None
        self._chunks = []
        logger.debug("Speech started at %.0fms", now)
        if self.on_speech_start is not None:
            self.on_speech_start(SpeechStart(timestamp_ms=now))

    def _complete(self, now: float, forced: bool) -> None:
        chunks = tuple(self._chunks)
        speech_start = self._speech_start_ms
        self.reset()

        if not chunks:
            logger.debug("Utterance ended with no buffered chunks, nothing emitted")
            return

        logger.info(
            "Speech ended: %.0fms utterance, %d chunks%s",
            now - speech_start,
            len(chunks),
            " (forced)" if forced else "",
        )
        if self.on_speech_end is not None:
            self.on_speech_end(
                SpeechEnd(
                    chunks=chunks,
                    speech_start_ms=speech_start,
                    timestamp_ms=now,
                    forced=forced,
                )
            )
