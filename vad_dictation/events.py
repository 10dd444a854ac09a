"""Typed event channel connecting hotkeys, capture, and the session coordinator."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Union

from vad_dictation._types import EncodedChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    """Toggle request from a hotkey or manual control."""

    source: str
    timestamp_ms: float = 0.0


@dataclass(frozen=True)
class SpeechStart:
    """Endpoint detector entered the speaking state."""

    timestamp_ms: float


@dataclass(frozen=True)
class SpeechEnd:
    """Utterance finished; carries the chunks buffered since SpeechStart."""

    chunks: tuple[EncodedChunk, ...]
    speech_start_ms: float
    timestamp_ms: float
    forced: bool = False


@dataclass(frozen=True)
class Waveform:
    """Downsampled waveform of the latest frame, for level displays."""

    data: tuple[float, ...]


@dataclass(frozen=True)
class NewlineRequested:
    """User asked for an explicit line break in the transcript."""


@dataclass(frozen=True)
class CancelRequested:
    """User asked to discard the current session."""


@dataclass(frozen=True)
class QuitRequested:
    """User asked the daemon to exit."""


@dataclass(frozen=True)
class StateChanged:
    """Session state transition notification."""

    state: str
    error: str | None = None


Event = Union[
    Trigger,
    SpeechStart,
    SpeechEnd,
    Waveform,
    NewlineRequested,
    CancelRequested,
    QuitRequested,
    StateChanged,
]

Handler = Callable[[Event], None]


@dataclass
class _Subscription:
    handler: Handler
    kinds: tuple[type, ...] = field(default_factory=tuple)

    def wants(self, event: Event) -> bool:
        return not self.kinds or isinstance(event, self.kinds)


class EventChannel:
    """Synchronous publish/subscribe channel with explicit teardown.

    Handlers run in the publisher's turn of the event loop. Publishers on
    other threads must marshal through ``loop.call_soon_threadsafe``.
    """

    def __init__(self):
        self._subscriptions: list[_Subscription] = []
        self._queues: list[tuple[asyncio.Queue, tuple[type, ...]]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, handler: Handler, *kinds: type) -> Callable[[], None]:
        """Register ``handler`` for the given event kinds (all kinds if none).

        Returns:
            Callable that removes the subscription; safe to call twice.
        """
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed event channel")

        subscription = _Subscription(handler=handler, kinds=kinds)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to every matching subscriber and listener."""
        if self._closed:
            logger.debug("Dropping %s published on closed channel", type(event).__name__)
            return

        for subscription in list(self._subscriptions):
            if not subscription.wants(event):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed for %s: %s",
                    type(event).__name__,
                    e,
                    exc_info=True,
                )

        for queue, kinds in self._queues:
            if not kinds or isinstance(event, kinds):
                queue.put_nowait(event)

    async def listen(self, *kinds: type) -> AsyncIterator[Event]:
        """Yield matching events until the channel is closed."""
        queue: asyncio.Queue = asyncio.Queue()
        entry = (queue, kinds)
        self._queues.append(entry)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if entry in self._queues:
                self._queues.remove(entry)

    def close(self) -> None:
        """Drop all subscribers and end every ``listen()`` iterator."""
        if self._closed:
            return
        self._closed = True
        self._subscriptions.clear()
        for queue, _ in self._queues:
            queue.put_nowait(None)
        logger.debug("Event channel closed")
