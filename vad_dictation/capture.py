"""Microphone capture producing amplitude frames and encoded stream chunks."""

import asyncio
import logging
import struct
import time
from typing import Callable

import numpy as np
import sounddevice

from vad_dictation._types import AudioFrame, CaptureError, EncodedChunk
from vad_dictation.config import AudioConfig
from vad_dictation.endpoint import frame_amplitude

logger = logging.getLogger(__name__)

WAV_MEDIA_TYPE = "audio/wav"
WAVEFORM_POINTS = 32

# Size fields of a WAV stream whose length is unknown when the header is written.
_STREAMING_SIZE = 0xFFFFFFFF

FrameCallback = Callable[[AudioFrame], None]
ChunkCallback = Callable[[EncodedChunk], None]
WaveformCallback = Callable[[tuple[float, ...]], None]


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class WavStreamEncoder:
    """Encodes PCM blocks as a streaming 16-bit WAV container.

    Only the first encoded block carries the RIFF header; later blocks are
    bare sample data. Any later block list therefore needs the first block
    in front of it to decode.
    """

    media_type = WAV_MEDIA_TYPE

    def __init__(self, sample_rate: int, channels: int):
        self.sample_rate = sample_rate
        self.channels = channels
        self._header_written = False

    def header(self) -> bytes:
        block_align = self.channels * 2
        return b"".join(
            [
                b"RIFF",
                struct.pack("<I", _STREAMING_SIZE),
                b"WAVE",
                b"fmt ",
                struct.pack(
                    "<IHHIIHH",
                    16,
                    1,
                    self.channels,
                    self.sample_rate,
                    self.sample_rate * block_align,
                    block_align,
                    16,
                ),
                b"data",
                struct.pack("<I", _STREAMING_SIZE),
            ]
        )

    def encode(self, samples: np.ndarray) -> bytes:
        """Encode float samples in [-1, 1] as little-endian int16 PCM."""
        pcm = np.clip(samples * 32767, -32768, 32767).astype("<i2").tobytes()
        if self._header_written:
            return pcm
        self._header_written = True
        return self.header() + pcm

    def reset(self) -> None:
        self._header_written = False


def downsample_waveform(samples: np.ndarray, points: int = WAVEFORM_POINTS) -> tuple[float, ...]:
    """Pick ``points`` evenly spaced samples for a level display."""
    flat = np.asarray(samples, dtype=np.float32).reshape(-1)
    if flat.size == 0:
        return tuple(0.0 for _ in range(points))
    step = max(flat.size // points, 1)
    picked = flat[::step][:points]
    if picked.size < points:
        picked = np.pad(picked, (0, points - picked.size))
    return tuple(float(v) for v in picked)


class CaptureSource:
    """Streams microphone audio via sounddevice.

    The PortAudio callback thread only computes the frame amplitude and
    encodes chunks; delivery to the consumer callbacks is marshalled onto
    the asyncio loop that called ``start()``.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        frame_ms: int = 20,
        chunk_ms: int = 100,
        device: int | str | None = None,
    ):
        """Initialize capture source.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            frame_ms: Amplitude analysis window in milliseconds
            chunk_ms: Encoded chunk interval in milliseconds
            device: Audio device index or name (None for default)
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if frame_ms <= 0 or chunk_ms < frame_ms:
            raise ValueError("chunk_ms must be at least frame_ms, both positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.frame_ms = frame_ms
        self.chunk_ms = chunk_ms
        self.device = device

        self.encoder = WavStreamEncoder(sample_rate, channels)
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_frame: FrameCallback | None = None
        self._on_chunk: ChunkCallback | None = None
        self._on_waveform: WaveformCallback | None = None
        self._pending: list[np.ndarray] = []
        self._pending_samples = 0
        self._sequence = 0
        self._generation = 0

        logger.info(
            "CaptureSource initialized: %d Hz, %d channels, frame=%dms, chunk=%dms, device=%s",
            sample_rate,
            channels,
            frame_ms,
            chunk_ms,
            device if device is not None else "default",
        )

    @classmethod
    def from_config(cls, config: AudioConfig) -> "CaptureSource":
        return cls(
            sample_rate=config.sample_rate,
            channels=config.channels,
            frame_ms=config.frame_ms,
            chunk_ms=config.chunk_ms,
            device=config.device,
        )

    @property
    def media_type(self) -> str:
        return self.encoder.media_type

    @property
    def running(self) -> bool:
        return self._stream is not None

    @property
    def frame_samples(self) -> int:
        return max(self.sample_rate * self.frame_ms // 1000, 1)

    @property
    def chunk_samples(self) -> int:
        return max(self.sample_rate * self.chunk_ms // 1000, 1)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit; ensure cleanup."""
        self.close()
        return False

    def start(
        self,
        on_frame: FrameCallback,
        on_chunk: ChunkCallback,
        on_waveform: WaveformCallback | None = None,
    ) -> None:
        """Open the input stream and begin delivering frames and chunks.

        Calling start() while already running is a no-op.

        Raises:
            CaptureError: If the stream cannot be opened
        """
        if self._stream is not None:
            logger.debug("Capture already running, start() ignored")
            return

        self._loop = asyncio.get_running_loop()
        self._on_frame = on_frame
        self._on_chunk = on_chunk
        self._on_waveform = on_waveform
        self._pending = []
        self._pending_samples = 0
        self._sequence = 0
        self._generation += 1
        self.encoder.reset()

        resolved_device = self._resolve_device_selection()
        try:
            stream = sounddevice.InputStream(
                device=resolved_device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.frame_samples,
                callback=self._callback,
                dtype="float32",
            )
            stream.start()
        except Exception as e:
            logger.error("Failed to start audio stream: %s", e)
            raise CaptureError(f"Failed to start audio stream: {e}") from e

        self._stream = stream
        logger.info(
            "Audio stream started (sample_rate=%d, channels=%d, device=%s)",
            self.sample_rate,
            self.channels,
            resolved_device if resolved_device is not None else "default",
        )

    def stop(self) -> None:
        """Stop the stream and release the device.

        Audio already queued for delivery is dropped.
        """
        self._generation += 1
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing stream: %s", e)
        self._pending = []
        self._pending_samples = 0
        logger.info("Audio stream stopped after %d chunks", self._sequence)

    def close(self) -> None:
        """Explicitly close stream and cleanup resources."""
        self.stop()
        self._on_frame = None
        self._on_chunk = None
        self._on_waveform = None

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on the PortAudio thread."""
        if status:
            logger.warning("Audio stream status: %s", status)

        samples = indata.copy()
        now = _now_ms()
        frame = AudioFrame(amplitude=frame_amplitude(samples), timestamp_ms=now)
        waveform = downsample_waveform(samples[:, 0]) if self._on_waveform else None

        chunk = None
        self._pending.append(samples)
        self._pending_samples += len(samples)
        if self._pending_samples >= self.chunk_samples:
            data = self.encoder.encode(np.concatenate(self._pending))
            chunk = EncodedChunk(data=data, sequence=self._sequence, timestamp_ms=now)
            self._sequence += 1
            self._pending = []
            self._pending_samples = 0

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._deliver, self._generation, frame, chunk, waveform)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _deliver(
        self,
        generation: int,
        frame: AudioFrame,
        chunk: EncodedChunk | None,
        waveform: tuple[float, ...] | None,
    ) -> None:
        """Hand one callback's output to the consumer on the loop thread."""
        if generation != self._generation or self._stream is None:
            return
        # Frame first, so a chunk containing a speech onset lands after
        # SpeechStart has cleared the utterance buffer.
        if self._on_frame is not None:
            self._on_frame(frame)
        if chunk is not None and self._on_chunk is not None:
            self._on_chunk(chunk)
        if waveform is not None and self._on_waveform is not None:
            self._on_waveform(waveform)

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_match: int | None = None
        available: list[str] = []

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue

            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                logger.debug("Resolved audio device '%s' to index %d", self.device, idx)
                return idx

            if partial_match is None and target in normalized:
                partial_match = idx

        if partial_match is not None:
            logger.debug(
                "Resolved audio device '%s' to index %d via partial match",
                self.device,
                partial_match,
            )
            return partial_match

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None
