"""Abstract base for all AI model providers, and the service that routes calls to them."""

from abc import ABC, abstractmethod

from arena.models import ModelResponse


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class ProviderTimeout(ProviderError):
    """The call did not finish within its timeout."""


class RateLimited(ProviderError):
    """The backend rejected the call with a rate limit (HTTP 429)."""

    def __init__(self, provider_name: str, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(provider_name, message)


class TransportError(ProviderError):
    """Network, server or SDK failure."""


class InvalidResponse(ProviderError):
    """The backend answered but the payload was empty or unusable."""


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the participant id (e.g. 'llama-70b', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        timeout_sec: float,
    ) -> ModelResponse:
        """Generate a completion for the given prompt.

        Args:
            prompt: The full prompt text to send.
            max_tokens: Upper bound on generated tokens.
            temperature: Sampling temperature.
            timeout_sec: Wall-clock budget for the call.

        Returns:
            ModelResponse dataclass with content and usage metadata.

        Raises:
            ProviderTimeout, RateLimited, TransportError, InvalidResponse.
        """
        ...


class TextGenerationService:
    """Routes an invocation to the provider registered for a participant id."""

    def __init__(self, providers: dict[str, AIProvider]) -> None:
        self._providers = dict(providers)

    def participants(self) -> list[str]:
        return list(self._providers)

    def has(self, participant_id: str) -> bool:
        return participant_id in self._providers

    async def invoke(
        self,
        participant_id: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
        timeout_sec: float,
    ) -> ModelResponse:
        provider = self._providers.get(participant_id)
        if provider is None:
            raise TransportError(participant_id, "Unknown participant")
        return await provider.generate(prompt, max_tokens, temperature, timeout_sec)
