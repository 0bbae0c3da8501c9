"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from arena.models import ModelResponse
from arena.providers.base import (
    AIProvider,
    InvalidResponse,
    ProviderError,
    ProviderTimeout,
    RateLimited,
    TransportError,
)

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        timeout_sec: float,
    ) -> ModelResponse:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=prompt,
                    config=genai_types.GenerateContentConfig(
                        max_output_tokens=min(max_tokens, self._config.max_tokens),
                        temperature=temperature,
                    ),
                ),
                timeout=timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderTimeout(self._config.name, f"Request timed out after {timeout_sec}s") from exc
        except genai_errors.APIError as exc:
            if exc.code == 429:
                raise RateLimited(self._config.name, f"Rate limited: {exc}") from exc
            raise TransportError(self._config.name, f"API call failed: {exc}") from exc
        except Exception as exc:
            raise TransportError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise InvalidResponse(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            content=response.text,
            latency_sec=latency,
            token_count=token_count,
            cost=(token_count or 0) / 1000 * self._config.cost_per_1k_tokens,
        )
