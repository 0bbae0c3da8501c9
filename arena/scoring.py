"""Score aggregation, deterministic champion selection, consensus and plateau detection."""

import logging
from dataclasses import dataclass
from statistics import mean

from config.config_loader import ScoringConfig
from arena.models import Candidate, Evaluation

logger = logging.getLogger(__name__)

_FLOAT_TOLERANCE = 1e-9
_SCORE_RANGE = 9.0   # max possible spread of 1-10 scores


@dataclass
class Aggregate:
    scores: dict[str, float | None]
    champion: str
    champion_score: float | None
    consensus_achieved: bool
    consensus_strength: float
    spread: float
    plateau_detected: bool


def weighted_overall(scores: dict[str, float], weights: dict[str, float] | None = None) -> float:
    """Weighted mean of sub-scores. Sub-scores without a weight count as 1.0."""
    if not scores:
        return 0.0
    weights = weights or {}
    total_weight = sum(weights.get(name, 1.0) for name in scores)
    if total_weight <= 0:
        return mean(scores.values())
    return sum(value * weights.get(name, 1.0) for name, value in scores.items()) / total_weight


def probe_pass_rate(candidate: Candidate) -> float | None:
    if not candidate.probe_results:
        return None
    return sum(1 for p in candidate.probe_results if p.passed) / len(candidate.probe_results)


def candidate_scores(evaluations: list[Evaluation], candidates: list[Candidate]) -> dict[str, float | None]:
    """Mean evaluation score per candidate, multiplied by its probe pass rate when probes ran.

    Candidates nobody evaluated map to None.
    """
    scores: dict[str, float | None] = {}
    for candidate in candidates:
        overalls = [e.overall for e in evaluations if e.target_id == candidate.participant_id]
        if not overalls:
            scores[candidate.participant_id] = None
            continue
        score = mean(overalls)
        rate = probe_pass_rate(candidate)
        if rate is not None:
            score *= rate
        scores[candidate.participant_id] = score
    return scores


def _tie_break_key(candidate: Candidate) -> tuple:
    rate = probe_pass_rate(candidate)
    return (-candidate.confidence, -(rate if rate is not None else 1.0), candidate.participant_id)


def select_winner(
    candidates: list[Candidate],
    scores: dict[str, float | None],
    tie_epsilon: float = 0.1,
) -> str:
    """Return exactly one winner.

    Highest score wins. Scores within ``tie_epsilon`` of the best are tied and
    broken by self-reported confidence, then probe pass rate, then participant
    id. Unscored candidates only compete when nothing was scored.

    Raises:
        ValueError: If ``candidates`` is empty.
    """
    if not candidates:
        raise ValueError("Cannot select a winner from zero candidates")

    scored = [c for c in candidates if scores.get(c.participant_id) is not None]
    if not scored:
        return sorted(candidates, key=_tie_break_key)[0].participant_id

    best = max(scores[c.participant_id] for c in scored)
    tied = [c for c in scored if best - scores[c.participant_id] <= tie_epsilon + _FLOAT_TOLERANCE]
    if len(tied) > 1:
        logger.debug("Tie within %.2f between %s", tie_epsilon, [c.participant_id for c in tied])
    return sorted(tied, key=_tie_break_key)[0].participant_id


def consensus(
    champion: str,
    evaluations: list[Evaluation],
    threshold: float,
    band: float,
) -> tuple[bool, float]:
    """(achieved, strength) over the evaluators' scores for the champion.

    Achieved when every evaluator scored the champion at or above ``threshold``
    and their spread is within ``band``. Strength is 1 - spread / 9.
    """
    overalls = [e.overall for e in evaluations if e.target_id == champion]
    if not overalls:
        return False, 0.0
    spread = max(overalls) - min(overalls)
    strength = max(0.0, min(1.0, 1.0 - spread / _SCORE_RANGE))
    achieved = all(o >= threshold - _FLOAT_TOLERANCE for o in overalls) and spread <= band + _FLOAT_TOLERANCE
    return achieved, round(strength, 4)


def score_spread(scores: dict[str, float | None]) -> float:
    defined = [s for s in scores.values() if s is not None]
    if len(defined) < 2:
        return 0.0
    return max(defined) - min(defined)


def aggregate(
    evaluations: list[Evaluation],
    candidates: list[Candidate],
    config: ScoringConfig,
    quality_threshold: float,
) -> Aggregate:
    scores = candidate_scores(evaluations, candidates)
    champion = select_winner(candidates, scores, config.tie_epsilon)
    achieved, strength = consensus(champion, evaluations, quality_threshold, config.consensus_band)
    spread = score_spread(scores)
    return Aggregate(
        scores=scores,
        champion=champion,
        champion_score=scores.get(champion),
        consensus_achieved=achieved,
        consensus_strength=strength,
        spread=round(spread, 4),
        plateau_detected=spread <= config.plateau_band + _FLOAT_TOLERANCE,
    )
