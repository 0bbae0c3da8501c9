"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"
_BATTLE_KINDS = {"system_prompt", "user_prompt", "answer"}


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    # Catalog metadata consumed by participant selection
    context_tokens: int = 131072
    avg_latency_ms: float = 1500.0
    cost_per_1k_tokens: float = 0.0
    tool_use: bool = False
    json_mode: bool = True
    diversity_key: str = ""
    skill: dict[str, float] = field(default_factory=dict)
    freshness: float = 0.5


@dataclass
class PromptsConfig:
    generation: dict[str, str]     # battle kind -> template
    evaluation: str
    refine: str = ""
    probe: str = ""


@dataclass
class DefaultsConfig:
    max_rounds: int
    output_dir: Path
    kind: str = "user_prompt"
    quality_threshold: float = 9.5
    store_dir: Path = Path("./battles")
    roster_size: int = 3
    default_roster: list[str] = field(default_factory=list)
    evaluators: list[str] = field(default_factory=list)
    battle_timeout_sec: float = 600.0
    round_timeout_sec: float = 300.0
    max_cost: float = 1.0
    generation_max_tokens: int = 1500
    generation_temperature: float = 0.4
    evaluation_max_tokens: int = 600
    evaluation_temperature: float = 0.2
    self_refine: bool = False
    probes: bool = False
    challenger_swap: bool = False
    seed: int | None = None


@dataclass
class ResilienceConfig:
    max_attempts: int = 4
    base_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_sec: float = 1.0
    rate_limit_delays_sec: list[float] = field(default_factory=lambda: [5.0, 15.0, 30.0, 60.0])
    failure_threshold: int = 3
    failure_window_sec: float = 300.0
    recovery_timeout_sec: float = 30.0
    max_alternates: int = 2
    fallback_max_tokens: int = 300
    fallback_temperature: float = 0.5
    fallback_timeout_sec: float = 20.0
    reduced_prompt_chars: int = 300
    reduced_max_tokens: int = 150
    rate_limit_per_minute: int = 30


@dataclass
class ScoringConfig:
    tie_epsilon: float = 0.1
    consensus_band: float = 0.5
    plateau_band: float = 0.1
    plateau_cap: int = 3
    neutral_score: float = 5.0
    # battle kind -> sub-score name -> weight; kinds not listed weigh equally
    weights: dict[str, dict[str, float]] = field(default_factory=dict)


@dataclass
class InboxConfig:
    dir: Path = Path("./inbox")
    archive_dir: Path = Path("./inbox/archive")


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    inbox: InboxConfig = field(default_factory=InboxConfig)
    available_providers: set[str] = field(default_factory=set)


def _load_defaults(defaults_raw: dict) -> DefaultsConfig:
    seed = defaults_raw.get("seed")
    kind = str(defaults_raw.get("kind", "user_prompt"))
    if kind not in _BATTLE_KINDS:
        raise ValueError(f"Unknown battle kind in settings: {kind!r} (expected one of {sorted(_BATTLE_KINDS)})")
    return DefaultsConfig(
        max_rounds=int(defaults_raw["max_rounds"]),
        output_dir=Path(defaults_raw["output_dir"]),
        kind=kind,
        quality_threshold=float(defaults_raw.get("quality_threshold", 9.5)),
        store_dir=Path(defaults_raw.get("store_dir", "./battles")),
        roster_size=int(defaults_raw.get("roster_size", 3)),
        default_roster=list(defaults_raw.get("default_roster", [])),
        evaluators=list(defaults_raw.get("evaluators", [])),
        battle_timeout_sec=float(defaults_raw.get("battle_timeout_sec", 600.0)),
        round_timeout_sec=float(defaults_raw.get("round_timeout_sec", 300.0)),
        max_cost=float(defaults_raw.get("max_cost", 1.0)),
        generation_max_tokens=int(defaults_raw.get("generation_max_tokens", 1500)),
        generation_temperature=float(defaults_raw.get("generation_temperature", 0.4)),
        evaluation_max_tokens=int(defaults_raw.get("evaluation_max_tokens", 600)),
        evaluation_temperature=float(defaults_raw.get("evaluation_temperature", 0.2)),
        self_refine=bool(defaults_raw.get("self_refine", False)),
        probes=bool(defaults_raw.get("probes", False)),
        challenger_swap=bool(defaults_raw.get("challenger_swap", False)),
        seed=int(seed) if seed is not None else None,
    )


def _load_model(provider_name: str, model_raw: dict) -> ModelConfig:
    return ModelConfig(
        name=provider_name,
        sdk=model_raw["sdk"],
        model=model_raw["model"],
        api_key_env=model_raw["api_key_env"],
        timeout_sec=int(model_raw["timeout_sec"]),
        max_tokens=int(model_raw["max_tokens"]),
        base_url=model_raw.get("base_url"),
        context_tokens=int(model_raw.get("context_tokens", 131072)),
        avg_latency_ms=float(model_raw.get("avg_latency_ms", 1500.0)),
        cost_per_1k_tokens=float(model_raw.get("cost_per_1k_tokens", 0.0)),
        tool_use=bool(model_raw.get("tool_use", False)),
        json_mode=bool(model_raw.get("json_mode", True)),
        diversity_key=str(model_raw.get("diversity_key", provider_name)),
        skill={k: float(v) for k, v in model_raw.get("skill", {}).items()},
        freshness=float(model_raw.get("freshness", 0.5)),
    )


def _load_resilience(raw: dict) -> ResilienceConfig:
    cfg = ResilienceConfig()
    for key, value in raw.items():
        if not hasattr(cfg, key):
            logger.warning("Unknown resilience setting ignored: %s", key)
            continue
        if key == "rate_limit_delays_sec":
            value = [float(v) for v in value]
        elif isinstance(getattr(cfg, key), int):
            value = int(value)
        else:
            value = float(value)
        setattr(cfg, key, value)
    return cfg


def _load_scoring(raw: dict) -> ScoringConfig:
    weights_raw = raw.get("weights", {})
    return ScoringConfig(
        tie_epsilon=float(raw.get("tie_epsilon", 0.1)),
        consensus_band=float(raw.get("consensus_band", 0.5)),
        plateau_band=float(raw.get("plateau_band", 0.1)),
        plateau_cap=int(raw.get("plateau_cap", 3)),
        neutral_score=float(raw.get("neutral_score", 5.0)),
        weights={
            kind: {name: float(w) for name, w in table.items()}
            for kind, table in weights_raw.items()
        },
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs warnings for missing API keys but does not raise — callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults = _load_defaults(raw["defaults"])

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        generation={k: str(v) for k, v in prompts_raw["generation"].items()},
        evaluation=prompts_raw["evaluation"],
        refine=prompts_raw.get("refine", ""),
        probe=prompts_raw.get("probe", ""),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        models[provider_name] = _load_model(provider_name, model_raw)

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    inbox_raw = raw.get("inbox", {})
    inbox = InboxConfig(
        dir=Path(inbox_raw.get("dir", "./inbox")),
        archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
    )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        resilience=_load_resilience(raw.get("resilience", {})),
        scoring=_load_scoring(raw.get("scoring", {})),
        inbox=inbox,
        available_providers=available_providers,
    )
