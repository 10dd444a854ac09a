"""Optional LLM cleanup of the finished transcript."""

import logging

import openai
from openai import AsyncOpenAI

from vad_dictation._types import CleanupError
from vad_dictation.config import CleanupConfig, OpenAIConfig

logger = logging.getLogger(__name__)


class TextCleaner:
    """Rewrites a transcript through a chat model, or passes it through.

    When disabled the text is returned unchanged. An empty model reply is
    treated as "no change".
    """

    def __init__(
        self,
        config: CleanupConfig,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.config = config
        self.model = model
        self._client = client
        if self._client is None and config.enabled:
            if not api_key:
                raise CleanupError("Cleanup enabled but no API key configured")
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=config.timeout,
                max_retries=0,
            )
        logger.info("TextCleaner initialized: enabled=%s, model=%s", config.enabled, model)

    @classmethod
    def from_config(cls, cleanup: CleanupConfig, openai_cfg: OpenAIConfig) -> "TextCleaner":
        return cls(
            cleanup,
            api_key=openai_cfg.api_key,
            model=openai_cfg.cleanup_model,
            base_url=openai_cfg.base_url,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def cleanup(self, text: str) -> str:
        """Return the cleaned transcript.

        Raises:
            CleanupError: If the chat request fails
        """
        if not self.config.enabled or self._client is None:
            return text

        logger.debug("Cleaning up transcript (%d characters)", len(text))
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.config.prompt},
                    {"role": "user", "content": text},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except openai.AuthenticationError as e:
            raise CleanupError("Invalid API key") from e
        except openai.RateLimitError as e:
            raise CleanupError("Rate limit exceeded") from e
        except openai.APIError as e:
            raise CleanupError(f"Cleanup failed: {e}") from e

        cleaned = ""
        if completion.choices:
            cleaned = (completion.choices[0].message.content or "").strip()
        if not cleaned:
            logger.debug("Cleanup returned no text, keeping original")
            return text
        return cleaned

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
