"""Shared types, dataclasses, and exceptions for cross-module use."""

from dataclasses import dataclass, field


class CaptureError(RuntimeError):
    """Microphone could not be opened or the capture stream failed."""

    pass


class TranscriptionError(RuntimeError):
    """A single segment could not be turned into text."""

    pass


class CleanupError(RuntimeError):
    """Transcript cleanup call failed."""

    pass


class HotkeyPermissionError(PermissionError):
    """Global hotkey listener could not be installed."""

    pass


@dataclass(frozen=True)
class AudioFrame:
    """Amplitude of one analysis window."""

    amplitude: float
    timestamp_ms: float


@dataclass(frozen=True)
class EncodedChunk:
    """Opaque unit of the encoded capture stream."""

    data: bytes
    sequence: int
    timestamp_ms: float = 0.0


@dataclass(frozen=True)
class Segment:
    """One utterance, decodable on its own."""

    data: bytes
    media_type: str
    sequence: int
    chunk_count: int

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class TranscriptionSegment:
    """A segment of transcribed text with timing information."""

    text: str
    start: float
    end: float
    confidence: float = 0.0


@dataclass
class TranscriptionResult:
    """Result from transcription."""

    text: str
    language: str | None = None
    confidence: float = 0.0
    segments: list[TranscriptionSegment] = field(default_factory=list)
