"""Segment transcription interface and local Faster Whisper backend."""

import asyncio
import io
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from vad_dictation._types import (
    Segment,
    TranscriptionError,
    TranscriptionResult,
    TranscriptionSegment,
)

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    """Turns one standalone segment into text."""

    async def transcribe(
        self,
        segment: Segment,
        language: str | None = None,
    ) -> TranscriptionResult: ...

    async def shutdown(self) -> None: ...


def normalize_text(text: str) -> str:
    """Collapse whitespace and tidy punctuation spacing."""
    text = text.strip()
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\.{2,}", ".", text)
    text = re.sub(r"\s+([.,!?;:])", r"\1", text)
    return text


class WhisperTranscriber:
    """Encapsulates a Faster Whisper model for local transcription.

    Runs transcription inside a thread pool executor to avoid blocking the event loop.
    Lazy-loads model on first transcription to avoid startup overhead.
    """

    def __init__(
        self,
        model_name: str = "base",
        device: str = "cpu",
        compute_type: str = "int8",
        model_directory: str | None = None,
        beam_size: int = 5,
        timeout: float = 30.0,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize transcriber.

        Args:
            model_name: Faster Whisper model name (tiny, base, small, etc.)
            device: Device to run on (cpu, cuda, auto)
            compute_type: Compute precision (int8, float16, float32)
            model_directory: Custom cache directory for model weights
            beam_size: Beam search width for decoding
            timeout: Maximum seconds per segment
            executor: Optional ThreadPoolExecutor for transcription tasks
        """
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.model_directory = model_directory
        self.beam_size = beam_size
        self.timeout = timeout
        self.executor = executor or ThreadPoolExecutor(max_workers=1)
        self._executor_owned = executor is None
        self._model = None
        self._model_lock = asyncio.Lock()
        logger.info(
            "WhisperTranscriber initialized: model=%s, device=%s, compute_type=%s, beam_size=%d",
            model_name,
            device,
            compute_type,
            beam_size,
        )

    async def _ensure_model_loaded(self) -> None:
        """Lazy-load WhisperModel on first use.

        Raises:
            TranscriptionError: If model fails to load
        """
        async with self._model_lock:
            if self._model is not None:
                return

            logger.info(
                "Loading Faster Whisper model: %s (device=%s, compute_type=%s)",
                self.model_name,
                self.device,
                self.compute_type,
            )

            try:
                from faster_whisper import WhisperModel

                start_time = time.perf_counter()
                self._model = await asyncio.get_running_loop().run_in_executor(
                    self.executor,
                    lambda: WhisperModel(
                        self.model_name,
                        device=self.device,
                        compute_type=self.compute_type,
                        download_root=self.model_directory,
                    ),
                )
                logger.info(
                    "Model loaded successfully in %.2f seconds",
                    time.perf_counter() - start_time,
                )
            except Exception as e:
                logger.error("Failed to load model %s: %s", self.model_name, e)
                raise TranscriptionError(
                    f"Failed to load Whisper model '{self.model_name}' on device "
                    f"'{self.device}' with compute_type '{self.compute_type}': {e}"
                ) from e

    async def transcribe(
        self,
        segment: Segment,
        language: str | None = None,
    ) -> TranscriptionResult:
        """Transcribe one segment.

        Args:
            segment: Standalone audio segment
            language: Language code, or None for detection

        Returns:
            TranscriptionResult with text, language, and segments

        Raises:
            TranscriptionError: If model loading or transcription fails
        """
        await self._ensure_model_loaded()

        logger.debug(
            "Transcribing segment #%d locally (%d bytes, language=%s)",
            segment.sequence,
            len(segment.data),
            language or "auto",
        )

        try:
            return await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    self.executor,
                    self._transcribe_sync,
                    segment.data,
                    language,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionError(
                f"Transcription timed out after {self.timeout} seconds"
            ) from e
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e

    def _transcribe_sync(self, data: bytes, language: str | None) -> TranscriptionResult:
        """Synchronous transcription (runs in thread pool)."""
        if self._model is None:
            raise TranscriptionError("Model not loaded")

        segments_iter, info = self._model.transcribe(
            io.BytesIO(data),
            language=language,
            beam_size=self.beam_size,
        )
        segments = [
            TranscriptionSegment(
                text=seg.text,
                start=seg.start,
                end=seg.end,
                confidence=getattr(seg, "avg_logprob", 0.0),
            )
            for seg in segments_iter
        ]

        return TranscriptionResult(
            text=normalize_text(" ".join(seg.text for seg in segments)),
            language=getattr(info, "language", language),
            confidence=getattr(info, "language_probability", 0.0),
            segments=segments,
        )

    async def shutdown(self) -> None:
        """Release model reference and stop the thread pool if owned."""
        logger.info("WhisperTranscriber shutting down")
        self._model = None
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=True)
            logger.debug("Executor shut down")
