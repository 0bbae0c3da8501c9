"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible backends (Groq, xAI, DeepSeek) when the
participant config carries a base_url.
"""

import asyncio
import logging
import os
import time

import openai
from openai import AsyncOpenAI

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


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        if config.sdk != "openai" and not config.base_url:
            raise ProviderError(config.name, f"base_url is required for {config.sdk} provider")
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

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
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=min(max_tokens, self._config.max_tokens),
                    temperature=temperature,
                ),
                timeout=timeout_sec,
            )
        except (TimeoutError, openai.APITimeoutError) as exc:
            raise ProviderTimeout(self._config.name, f"Request timed out after {timeout_sec}s") from exc
        except openai.RateLimitError as exc:
            raise RateLimited(self._config.name, f"Rate limited: {exc}") from exc
        except Exception as exc:
            raise TransportError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise InvalidResponse(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info("OpenAI-compatible %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            content=choice.message.content,
            latency_sec=latency,
            token_count=token_count,
            cost=(token_count or 0) / 1000 * self._config.cost_per_1k_tokens,
        )
