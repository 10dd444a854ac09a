"""Tests for the OpenAI transcription backend."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from vad_dictation._types import Segment, TranscriptionError
from vad_dictation.transcriber_openai import OpenAITranscriber

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")


def _status_error(cls, status):
    return cls("error", response=httpx.Response(status, request=_REQUEST), body=None)


@pytest.fixture
def client():
    mock = MagicMock()
    mock.audio.transcriptions.create = AsyncMock(return_value="  hello   world ")
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def transcriber(client):
    return OpenAITranscriber(api_key="sk-test", client=client)


@pytest.fixture
def segment():
    return Segment(data=b"RIFFdata", media_type="audio/wav", sequence=7, chunk_count=3)


class TestOpenAITranscriber:
    """Tests for OpenAITranscriber."""

    @pytest.mark.asyncio
    async def test_uploads_segment_as_file(self, transcriber, client, segment):
        result = await transcriber.transcribe(segment, language="en")

        assert result.text == "hello world"
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["file"] == ("segment-7.wav", b"RIFFdata", "audio/wav")
        assert kwargs["model"] == "gpt-4o-mini-transcribe"
        assert kwargs["response_format"] == "text"
        assert kwargs["language"] == "en"

    @pytest.mark.asyncio
    async def test_no_language_hint(self, transcriber, client, segment):
        await transcriber.transcribe(segment)
        assert "language" not in client.audio.transcriptions.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_codec_parameter_stripped(self, transcriber, client):
        segment = Segment(data=b"x", media_type="audio/webm;codecs=opus", sequence=0, chunk_count=1)
        await transcriber.transcribe(segment)
        assert client.audio.transcriptions.create.call_args.kwargs["file"][0] == "segment-0.webm"

    @pytest.mark.asyncio
    async def test_object_response(self, transcriber, client, segment):
        client.audio.transcriptions.create.return_value = MagicMock(text="from object")
        result = await transcriber.transcribe(segment)
        assert result.text == "from object"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,message",
        [
            (_status_error(openai.AuthenticationError, 401), "Invalid API key"),
            (_status_error(openai.RateLimitError, 429), "Rate limit"),
            (_status_error(openai.BadRequestError, 400), "too short"),
            (openai.APIConnectionError(request=_REQUEST), "Transcription failed"),
        ],
    )
    async def test_errors_mapped(self, transcriber, client, segment, error, message):
        client.audio.transcriptions.create.side_effect = error

        with pytest.raises(TranscriptionError, match=message):
            await transcriber.transcribe(segment)

    @pytest.mark.asyncio
    async def test_shutdown_closes_client(self, transcriber, client):
        await transcriber.shutdown()
        client.close.assert_awaited_once()
