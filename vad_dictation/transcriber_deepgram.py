"""Segment transcription via Deepgram API."""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor

from vad_dictation._types import (
    Segment,
    TranscriptionError,
    TranscriptionResult,
    TranscriptionSegment,
)
from vad_dictation.transcriber import normalize_text

logger = logging.getLogger(__name__)


class DeepgramTranscriber:
    """Encapsulates the Deepgram client for per-segment transcription.

    Runs requests inside a thread pool executor to avoid blocking the event loop.
    Lazy-initializes client on first transcription.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "nova-3",
        smart_format: bool = True,
        punctuate: bool = True,
        timeout: float = 30.0,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize Deepgram transcriber.

        Args:
            api_key: Deepgram API key
            model: Deepgram model (nova-3, nova-2, whisper-large, etc.)
            smart_format: Enable smart formatting (currency, dates, etc.)
            punctuate: Auto-add punctuation
            timeout: API request timeout in seconds
            executor: Optional ThreadPoolExecutor for transcription tasks
        """
        self.api_key = api_key
        self.model = model
        self.smart_format = smart_format
        self.punctuate = punctuate
        self.timeout = timeout
        # Several segments may be in flight at once.
        self.executor = executor or ThreadPoolExecutor(max_workers=4)
        self._executor_owned = executor is None
        self._client = None
        self._client_lock = asyncio.Lock()
        logger.info(
            "DeepgramTranscriber initialized: model=%s, smart_format=%s, punctuate=%s",
            model,
            smart_format,
            punctuate,
        )

    async def _ensure_client_initialized(self) -> None:
        """Lazy-initialize Deepgram client on first use.

        Raises:
            TranscriptionError: If client initialization fails
        """
        async with self._client_lock:
            if self._client is not None:
                return

            logger.info("Initializing Deepgram client with model: %s", self.model)

            try:
                from deepgram import DeepgramClient

                start_time = time.perf_counter()
                self._client = DeepgramClient(api_key=self.api_key)
                logger.info(
                    "Deepgram client initialized in %.3f seconds",
                    time.perf_counter() - start_time,
                )
            except Exception as e:
                logger.error("Failed to initialize Deepgram client: %s", e)
                raise TranscriptionError(f"Failed to initialize Deepgram client: {e}") from e

    async def transcribe(
        self,
        segment: Segment,
        language: str | None = None,
    ) -> TranscriptionResult:
        """Transcribe one segment using the Deepgram API.

        Raises:
            TranscriptionError: If the request fails or times out
        """
        await self._ensure_client_initialized()

        logger.debug(
            "Sending segment #%d to Deepgram (%d bytes, %s)",
            segment.sequence,
            len(segment.data),
            segment.media_type,
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
                f"Deepgram transcription timed out after {self.timeout} seconds"
            ) from e
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Deepgram transcription failed: {e}") from e

    def _transcribe_sync(self, data: bytes, language: str | None) -> TranscriptionResult:
        """Synchronous Deepgram request (runs in thread pool)."""
        if self._client is None:
            raise TranscriptionError("Deepgram client not initialized")

        options = {
            "model": self.model,
            "smart_format": self.smart_format,
            "punctuate": self.punctuate,
        }
        if language:
            options["language"] = language
        else:
            options["detect_language"] = True

        from deepgram.core.api_error import ApiError

        try:
            response = self._client.listen.v1.media.transcribe_file(request=data, **options)
        except ApiError as e:
            if e.status_code == 401:
                raise TranscriptionError("Invalid Deepgram API key") from e
            if e.status_code == 429:
                raise TranscriptionError("Deepgram API rate limit exceeded") from e
            if e.status_code and e.status_code >= 500:
                raise TranscriptionError(f"Deepgram server error: {e.status_code}") from e
            raise TranscriptionError(f"Deepgram API error ({e.status_code}): {e.body}") from e

        channel = response.results.channels[0]
        alternative = channel.alternatives[0]

        segments = []
        words = getattr(alternative, "words", None) or []
        if words:
            segments.append(
                TranscriptionSegment(
                    text=alternative.transcript,
                    start=words[0].start,
                    end=words[-1].end,
                    confidence=getattr(alternative, "confidence", 0.0) or 0.0,
                )
            )

        return TranscriptionResult(
            text=normalize_text(alternative.transcript or ""),
            language=getattr(channel, "detected_language", None) or language,
            confidence=getattr(alternative, "confidence", 0.0) or 0.0,
            segments=segments,
        )

    async def shutdown(self) -> None:
        """Release client reference and stop thread pool if owned."""
        logger.info("DeepgramTranscriber shutting down")
        self._client = None
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=True)
            logger.debug("Executor shut down")
