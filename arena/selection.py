"""Participant selection: constraint filter, diversity, seed ranking, bandit explorer."""

import logging
import random

from arena.catalog import skill_for
from arena.models import ParticipantCapability, RequirementSpec

logger = logging.getLogger(__name__)

ROSTER_CAP = 3
SEEDED_PICKS = 2
EXPLORE_PROBABILITY = 0.15

# Reference units that turn cost and latency into seed-score penalties
_COST_UNIT = 0.001
_LATENCY_UNIT_MS = 2000.0
_COST_WEIGHT = 0.5
_LATENCY_WEIGHT = 0.5
_FRESHNESS_WEIGHT = 0.2


def passes_constraints(capability: ParticipantCapability, spec: RequirementSpec) -> bool:
    limits = spec.constraints
    if capability.context_tokens < limits.min_context_tokens:
        return False
    if capability.avg_latency_ms > limits.max_latency_ms:
        return False
    if capability.cost_per_1k_tokens > limits.max_cost_per_1k:
        return False
    needs_tools = {"web_search", "function_calling"} & spec.required_capabilities
    if needs_tools and not capability.tool_use:
        return False
    if "structured_output" in spec.required_capabilities and not capability.structured_output:
        return False
    return True


def seed_score(capability: ParticipantCapability, spec: RequirementSpec) -> float:
    return (
        skill_for(capability, spec.category)
        - _COST_WEIGHT * capability.cost_per_1k_tokens / _COST_UNIT
        - _LATENCY_WEIGHT * capability.avg_latency_ms / _LATENCY_UNIT_MS
        + _FRESHNESS_WEIGHT * capability.freshness
    )


def _diversify(
    survivors: list[ParticipantCapability], spec: RequirementSpec
) -> tuple[list[ParticipantCapability], list[ParticipantCapability]]:
    """Keep the best-rated entry per diversity group. Returns (kept, dropped)."""
    groups: dict[str, list[ParticipantCapability]] = {}
    for cap in survivors:
        groups.setdefault(cap.diversity_key or cap.id, []).append(cap)

    kept, dropped = [], []
    for members in groups.values():
        members.sort(key=lambda c: (-skill_for(c, spec.category), c.id))
        kept.append(members[0])
        dropped.extend(members[1:])
    return kept, dropped


def rank(capabilities: list[ParticipantCapability], spec: RequirementSpec) -> list[ParticipantCapability]:
    return sorted(capabilities, key=lambda c: (-seed_score(c, spec), c.id))


def select(
    spec: RequirementSpec,
    catalog: list[ParticipantCapability],
    rng: random.Random | None = None,
    roster_cap: int = ROSTER_CAP,
    explore_probability: float = EXPLORE_PROBABILITY,
    fallback_roster: list[str] | None = None,
) -> list[str]:
    """Pick 2-3 participants for a battle.

    Falls back to ``fallback_roster`` (or the first two catalog ids) when fewer
    than two participants satisfy the constraints.
    """
    rng = rng or random.Random()
    roster_cap = max(SEEDED_PICKS, min(roster_cap, ROSTER_CAP))

    survivors = [c for c in catalog if passes_constraints(c, spec)]
    if len(survivors) < SEEDED_PICKS:
        fallback = list(fallback_roster) if fallback_roster else sorted(c.id for c in catalog)[:SEEDED_PICKS]
        logger.warning(
            "Only %d participant(s) satisfy the constraints, using fallback roster: %s",
            len(survivors), ", ".join(fallback),
        )
        return fallback[:roster_cap]

    kept, dropped = _diversify(survivors, spec)
    ranked = rank(kept, spec)
    if len(ranked) < SEEDED_PICKS:
        # Not enough distinct groups; refill from the near-duplicates
        ranked += rank(dropped, spec)[: SEEDED_PICKS - len(ranked)]

    roster = [c.id for c in ranked[:SEEDED_PICKS]]
    explorers = [c.id for c in ranked[SEEDED_PICKS:]]
    if explorers and len(roster) < roster_cap and rng.random() < explore_probability:
        pick = rng.choice(explorers)
        roster.append(pick)
        logger.info("Bandit explorer added: %s", pick)

    logger.info("Selected roster for %s: %s", spec.category.value, ", ".join(roster))
    return roster


def pick_challenger(
    spec: RequirementSpec,
    catalog: list[ParticipantCapability],
    exclude: list[str],
    rng: random.Random | None = None,
) -> str | None:
    """Uniform bandit pick among eligible participants not already fielded."""
    rng = rng or random.Random()
    pool = sorted(c.id for c in catalog if c.id not in exclude and passes_constraints(c, spec))
    if not pool:
        return None
    return rng.choice(pool)
