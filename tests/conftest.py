"""Shared pytest fixtures."""

import random
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    ModelConfig,
    PromptsConfig,
    ResilienceConfig,
    ScoringConfig,
)
from arena.models import ModelResponse
from arena.providers.base import AIProvider, ProviderError, TextGenerationService, TransportError
from arena.resilience import EngineState, ResilientInvoker


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        generation={
            "system_prompt": "GENERATE system prompt round {round}\nTask: {task}\nBaseline: {baseline}\nFeedback: {feedback}",
            "user_prompt": "GENERATE user prompt round {round}\nTask: {task}\nBaseline: {baseline}\nFeedback: {feedback}",
            "answer": "ANSWER the task ({category}, {output_format}): {task}",
        },
        evaluation="EVALUATE {candidate_label}\nTask: {task}\n{candidate}",
        refine="REFINE\nTask: {task}\n{candidate}",
        probe="PROBE {probe_type}: {question}\n{candidate}",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        max_rounds=3,
        output_dir=tmp_path / "output",
        store_dir=tmp_path / "battles",
        quality_threshold=9.5,
        round_timeout_sec=5.0,
        battle_timeout_sec=30.0,
        max_cost=0.0,
        seed=7,
    )


@pytest.fixture
def fast_resilience() -> ResilienceConfig:
    return ResilienceConfig(
        max_attempts=4,
        base_delay_sec=0.0,
        max_delay_sec=0.0,
        jitter_sec=0.0,
        rate_limit_delays_sec=[0.0],
        failure_threshold=3,
        recovery_timeout_sec=30.0,
        rate_limit_per_minute=1000,
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
    fast_resilience: ResilienceConfig,
) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        prompts=sample_prompts_config,
        resilience=fast_resilience,
        scoring=ScoringConfig(),
        available_providers={"claude"},
    )


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


def _response(name: str, content: str, cost: float = 0.0) -> ModelResponse:
    return ModelResponse(
        provider=name,
        model="mock-model",
        content=content,
        latency_sec=0.1,
        token_count=10,
        cost=cost,
    )


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=_response(provider_name, response_content)
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, prompt: str, max_tokens: int, temperature: float,
                       timeout_sec: float) -> ModelResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return _response(self._name, self._response_content)


def generation_reply(text: str, confidence: float = 8.0, rationale: str = "Tightened the wording.") -> str:
    return f"RATIONALE: {rationale}\nIMPROVED_TEXT:\n{text}\nCONFIDENCE: {confidence:g}"


def evaluation_reply(score: float, critique: str = "Solid and specific.", suggestions=("Add an example",)) -> str:
    lines = [f"{name}: {score:g}" for name in ("CLARITY", "STRUCTURE", "ACCURACY", "USEFULNESS", "CREATIVITY")]
    lines.append(f"CRITIQUE: {critique}")
    if suggestions:
        lines.append("SUGGESTIONS:")
        lines.extend(f"- {s}" for s in suggestions)
    return "\n".join(lines)


class ScriptedProvider(AIProvider):
    """Replays fixed outputs chosen by the kind of prompt it receives.

    ``text``/``score`` may be plain values or callables taking the prompt, so a
    test can vary output per round or per evaluated candidate. The first
    ``fail_times`` calls raise ``error``, as does every prompt starting with
    ``fail_prefix``.
    """

    def __init__(
        self,
        provider_name: str,
        text: str | Callable[[str], str] | None = None,
        confidence: float = 8.0,
        score: float | Callable[[str], float] = 8.0,
        verdict: str = "PASS",
        fail_times: int = 0,
        error: type[ProviderError] = TransportError,
        cost: float = 0.001,
        raw: str | None = None,
        fail_prefix: str | None = None,
    ) -> None:
        self._name = provider_name
        self._text = text if text is not None else f"Improved prompt written by {provider_name}."
        self._confidence = confidence
        self._score = score
        self._verdict = verdict
        self._failures_left = fail_times
        self._error = error
        self._cost = cost
        self._raw = raw
        self._fail_prefix = fail_prefix
        self.calls: list[str] = []
        self.timeouts: list[float] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return f"{self._name}-model"

    async def generate(self, prompt: str, max_tokens: int, temperature: float, timeout_sec: float) -> ModelResponse:
        self.calls.append(prompt)
        self.timeouts.append(timeout_sec)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise self._error(self._name, "scripted failure")
        if self._fail_prefix and prompt.startswith(self._fail_prefix):
            raise self._error(self._name, "scripted failure")
        return _response(self._name, self._reply(prompt), cost=self._cost)

    def _reply(self, prompt: str) -> str:
        if self._raw is not None:
            return self._raw
        if prompt.startswith("EVALUATE"):
            score = self._score(prompt) if callable(self._score) else self._score
            return evaluation_reply(score)
        if prompt.startswith("PROBE"):
            return f"VERDICT: {self._verdict}\nNOTES: scripted verdict"
        if prompt.startswith("REFINE"):
            return f"WEAKNESSES: Too vague.\nREVISED_TEXT:\nRevised by {self._name}."
        text = self._text(prompt) if callable(self._text) else self._text
        if prompt.startswith("ANSWER"):
            return f"RATIONALE: Direct answer.\nANSWER:\n{text}\nCONFIDENCE: {self._confidence:g}"
        return generation_reply(text, self._confidence)


def make_service(*providers: AIProvider) -> TextGenerationService:
    return TextGenerationService({p.name(): p for p in providers})


def make_invoker(
    service: TextGenerationService,
    resilience: ResilienceConfig,
    state: EngineState | None = None,
    sleep: AsyncMock | None = None,
) -> ResilientInvoker:
    return ResilientInvoker(
        service,
        state or EngineState(resilience),
        resilience,
        rng=random.Random(0),
        sleep=sleep or AsyncMock(return_value=None),
    )


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def two_mock_providers() -> list[MockProvider]:
    return [MockProvider("provider_a", "Response from A"), MockProvider("provider_b", "Response from B")]
