"""Participant catalog: capability metadata and per-category skill ratings."""

import logging
from typing import Protocol

from config.config_loader import ModelConfig
from arena.models import ParticipantCapability, TaskCategory

logger = logging.getLogger(__name__)

DEFAULT_SKILL = 1500.0
ELO_K = 16.0


class ParticipantCatalog(Protocol):
    def list(self) -> list[ParticipantCapability]:
        ...


def capability_from_config(model: ModelConfig) -> ParticipantCapability:
    return ParticipantCapability(
        id=model.name,
        context_tokens=model.context_tokens,
        avg_latency_ms=model.avg_latency_ms,
        cost_per_1k_tokens=model.cost_per_1k_tokens,
        tool_use=model.tool_use,
        structured_output=model.json_mode,
        skill=dict(model.skill),
        freshness=model.freshness,
        diversity_key=model.diversity_key or model.name,
    )


def skill_for(capability: ParticipantCapability, category: TaskCategory) -> float:
    return capability.skill.get(category.value, DEFAULT_SKILL)


def expected_score(rating: float, opponent: float) -> float:
    return 1.0 / (1.0 + 10 ** ((opponent - rating) / 400.0))


class StaticCatalog:
    """In-memory catalog built from settings. ``list()`` returns copies."""

    def __init__(self, capabilities: list[ParticipantCapability]) -> None:
        self._entries = {c.id: c for c in capabilities}

    @classmethod
    def from_config(cls, models: dict[str, ModelConfig], available: set[str] | None = None) -> "StaticCatalog":
        names = [n for n in models if available is None or n in available]
        return cls([capability_from_config(models[n]) for n in names])

    def get(self, participant_id: str) -> ParticipantCapability | None:
        return self._entries.get(participant_id)

    def record_result(self, category: TaskCategory, winner: str, losers: list[str], k: float = ELO_K) -> None:
        """Elo update: the winner beat every loser once."""
        if winner not in self._entries:
            return
        ratings = {
            pid: skill_for(self._entries[pid], category)
            for pid in [winner, *losers] if pid in self._entries
        }
        deltas = dict.fromkeys(ratings, 0.0)
        for loser in losers:
            if loser not in ratings:
                continue
            change = k * (1.0 - expected_score(ratings[winner], ratings[loser]))
            deltas[winner] += change
            deltas[loser] -= change

        for pid, delta in deltas.items():
            self._entries[pid].skill[category.value] = round(ratings[pid] + delta, 2)
        logger.info(
            "Skill update (%s): %s",
            category.value,
            ", ".join(f"{pid} {deltas[pid]:+.1f}" for pid in deltas),
        )

    # defined last: the name shadows the builtin for annotations below it in the class body
    def list(self) -> list[ParticipantCapability]:
        return [
            ParticipantCapability(**{**vars(c), "skill": dict(c.skill)})
            for c in self._entries.values()
        ]
