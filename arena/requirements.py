"""Turn a raw task description into a RequirementSpec. Pure keyword rules, no I/O."""

import logging
import re

from arena.models import BattleKind, Constraints, RequirementSpec, TaskCategory

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-IN"

# First matching rule wins; order matters ("write" means creative before writing)
_CATEGORY_RULES: list[tuple[TaskCategory, tuple[str, ...]]] = [
    (TaskCategory.CREATIVE, ("write", "story", "creative", "poem")),
    (TaskCategory.PLANNING, ("plan", "strategy", "organize", "schedule")),
    (TaskCategory.TECHNICAL, ("code", "technical", "programming", "debug", "implement")),
    (TaskCategory.ANALYSIS, ("analyze", "analyse", "compare", "research", "evaluate")),
    (TaskCategory.WRITING, ("explain", "describe", "summarize", "summarise")),
]

_FORMAT_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("json", ("json", "structured")),
    ("table", ("table", "chart")),
    ("markdown", ("markdown", "formatted")),
]

_CAPABILITY_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("web_search", ("search", "research", "current", "latest")),
    ("function_calling", ("function", "api", "tool")),
]


def _mentions(text: str, keywords: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}", text) for k in keywords)


def classify_category(text: str) -> TaskCategory:
    lowered = text.lower()
    for category, keywords in _CATEGORY_RULES:
        if _mentions(lowered, keywords):
            return category
    return TaskCategory.REASONING


def detect_output_format(text: str) -> str:
    lowered = text.lower()
    for output_format, keywords in _FORMAT_RULES:
        if _mentions(lowered, keywords):
            return output_format
    return "text"


def normalize(
    raw_task: str,
    battle_kind: BattleKind = BattleKind.USER_PROMPT,
    constraints: Constraints | None = None,
    locale: str = DEFAULT_LOCALE,
    category: TaskCategory | None = None,
) -> RequirementSpec:
    """Build the requirement record for a battle.

    Args:
        raw_task: The user's task or prompt text.
        battle_kind: Direct-answer battles additionally need structured output
            from participants when the task asks for JSON.
        constraints: Overrides the default latency/cost/context ceilings.
        locale: Audience locale tag.
        category: Explicit category; skips keyword classification.
    """
    lowered = raw_task.lower()
    output_format = detect_output_format(raw_task)

    capabilities = {cap for cap, keywords in _CAPABILITY_RULES if _mentions(lowered, keywords)}
    if battle_kind == BattleKind.ANSWER and output_format == "json":
        capabilities.add("structured_output")

    spec = RequirementSpec(
        category=category or classify_category(raw_task),
        locale=locale,
        constraints=constraints or Constraints(),
        required_capabilities=frozenset(capabilities),
        output_format=output_format,
    )
    logger.debug(
        "Normalized %s task: category=%s format=%s capabilities=%s",
        battle_kind.value, spec.category.value, spec.output_format, sorted(spec.required_capabilities),
    )
    return spec
