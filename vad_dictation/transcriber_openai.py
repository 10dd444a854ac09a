"""Segment transcription via the OpenAI audio API."""

import logging

import openai
from openai import AsyncOpenAI

from vad_dictation._types import Segment, TranscriptionError, TranscriptionResult
from vad_dictation.transcriber import normalize_text

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
}


class OpenAITranscriber:
    """Uploads each segment as its own file to the transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini-transcribe",
        base_url: str | None = None,
        timeout: float = 30.0,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )
        logger.info("OpenAITranscriber initialized: model=%s", model)

    async def transcribe(
        self,
        segment: Segment,
        language: str | None = None,
    ) -> TranscriptionResult:
        """Transcribe one segment.

        Raises:
            TranscriptionError: On authentication, rate limit, format, or transport failure
        """
        media_type = segment.media_type.split(";")[0]
        filename = f"segment-{segment.sequence}.{_EXTENSIONS.get(media_type, 'bin')}"
        logger.debug(
            "Uploading %s (%d bytes, language=%s)",
            filename,
            len(segment.data),
            language or "auto",
        )

        request = {
            "file": (filename, segment.data, media_type),
            "model": self.model,
            "response_format": "text",
        }
        if language:
            request["language"] = language

        try:
            response = await self._client.audio.transcriptions.create(**request)
        except openai.AuthenticationError as e:
            raise TranscriptionError("Invalid API key") from e
        except openai.RateLimitError as e:
            raise TranscriptionError("Rate limit exceeded. Please try again later.") from e
        except openai.BadRequestError as e:
            raise TranscriptionError("Audio format not supported or audio too short") from e
        except openai.APIError as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e

        text = response if isinstance(response, str) else getattr(response, "text", "")
        return TranscriptionResult(text=normalize_text(text), language=language)

    async def shutdown(self) -> None:
        logger.info("OpenAITranscriber shutting down")
        await self._client.close()
