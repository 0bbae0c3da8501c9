"""Battle record persistence: lossless dict conversion plus file and memory stores."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from arena.models import (
    BattleKind,
    BattleRecord,
    BattleStatus,
    Candidate,
    Constraints,
    Evaluation,
    ProbeResult,
    RequirementSpec,
    Revision,
    RoundResult,
    StopReason,
    TaskCategory,
)

logger = logging.getLogger(__name__)


class RecordNotFound(KeyError):
    """No battle record stored under the requested id."""


# --- conversion ---

def _requirements_to_dict(spec: RequirementSpec) -> dict:
    return {
        "category": spec.category.value,
        "locale": spec.locale,
        "constraints": {
            "max_latency_ms": spec.constraints.max_latency_ms,
            "max_cost_per_1k": spec.constraints.max_cost_per_1k,
            "min_context_tokens": spec.constraints.min_context_tokens,
        },
        "required_capabilities": sorted(spec.required_capabilities),
        "output_format": spec.output_format,
    }


def _requirements_from_dict(data: dict) -> RequirementSpec:
    return RequirementSpec(
        category=TaskCategory(data["category"]),
        locale=data["locale"],
        constraints=Constraints(**data["constraints"]),
        required_capabilities=frozenset(data["required_capabilities"]),
        output_format=data["output_format"],
    )


def _candidate_to_dict(c: Candidate) -> dict:
    return {
        "participant_id": c.participant_id,
        "text": c.text,
        "confidence": c.confidence,
        "rationale": c.rationale,
        "revisions": [{"text": r.text, "rationale": r.rationale} for r in c.revisions],
        "probe_results": [
            {"probe_type": p.probe_type, "question": p.question, "passed": p.passed, "notes": p.notes}
            for p in c.probe_results
        ],
        "parse_confidence": c.parse_confidence,
        "fallback": c.fallback,
        "cost": c.cost,
    }


def _candidate_from_dict(data: dict) -> Candidate:
    return Candidate(
        participant_id=data["participant_id"],
        text=data["text"],
        confidence=data["confidence"],
        rationale=data.get("rationale", ""),
        revisions=[Revision(**r) for r in data.get("revisions", [])],
        probe_results=[ProbeResult(**p) for p in data.get("probe_results", [])],
        parse_confidence=data.get("parse_confidence", 1.0),
        fallback=data.get("fallback", False),
        cost=data.get("cost", 0.0),
    )


def _evaluation_to_dict(e: Evaluation) -> dict:
    return {
        "evaluator_id": e.evaluator_id,
        "target_id": e.target_id,
        "scores": dict(e.scores),
        "rationale": e.rationale,
        "suggestions": list(e.suggestions),
        "overall": e.overall,
        "parse_confidence": e.parse_confidence,
        "fallback": e.fallback,
    }


def _round_to_dict(r: RoundResult) -> dict:
    return {
        "number": r.number,
        "candidates": [_candidate_to_dict(c) for c in r.candidates],
        "evaluations": [_evaluation_to_dict(e) for e in r.evaluations],
        "scores": dict(r.scores),
        "champion": r.champion,
        "champion_score": r.champion_score,
        "consensus_achieved": r.consensus_achieved,
        "consensus_strength": r.consensus_strength,
        "plateau_detected": r.plateau_detected,
        "spread": r.spread,
        "improvement": r.improvement,
        "cost": r.cost,
        "degraded": r.degraded,
    }


def _round_from_dict(data: dict) -> RoundResult:
    return RoundResult(
        number=data["number"],
        candidates=[_candidate_from_dict(c) for c in data["candidates"]],
        evaluations=[Evaluation(**e) for e in data["evaluations"]],
        scores=dict(data["scores"]),
        champion=data["champion"],
        champion_score=data["champion_score"],
        consensus_achieved=data["consensus_achieved"],
        consensus_strength=data["consensus_strength"],
        plateau_detected=data["plateau_detected"],
        spread=data["spread"],
        improvement=data["improvement"],
        cost=data["cost"],
        degraded=data["degraded"],
    )


def record_to_dict(record: BattleRecord) -> dict:
    return {
        "id": record.id,
        "kind": record.kind.value,
        "task": record.task,
        "requirements": _requirements_to_dict(record.requirements),
        "roster": list(record.roster),
        "rounds": [_round_to_dict(r) for r in record.rounds],
        "winner": record.winner,
        "final_text": record.final_text,
        "total_cost": record.total_cost,
        "converged": record.converged,
        "status": record.status.value,
        "stop_reason": record.stop_reason.value if record.stop_reason else None,
        "error": record.error,
        "started_at": record.started_at,
        "finished_at": record.finished_at,
        "persisted": record.persisted,
        "persistence_error": record.persistence_error,
    }


def record_from_dict(data: dict) -> BattleRecord:
    stop_reason = data.get("stop_reason")
    return BattleRecord(
        id=data["id"],
        kind=BattleKind(data["kind"]),
        task=data["task"],
        requirements=_requirements_from_dict(data["requirements"]),
        roster=list(data["roster"]),
        rounds=[_round_from_dict(r) for r in data["rounds"]],
        winner=data.get("winner"),
        final_text=data.get("final_text"),
        total_cost=data.get("total_cost", 0.0),
        converged=data.get("converged", False),
        status=BattleStatus(data["status"]),
        stop_reason=StopReason(stop_reason) if stop_reason else None,
        error=data.get("error"),
        started_at=data.get("started_at", ""),
        finished_at=data.get("finished_at"),
        persisted=data.get("persisted", False),
        persistence_error=data.get("persistence_error"),
    )


# --- stores ---

class BattleStore(ABC):
    @abstractmethod
    def save(self, record: BattleRecord) -> None:
        """Persist a finished record. Raises OSError (or similar) on failure."""
        ...

    @abstractmethod
    def load(self, battle_id: str) -> BattleRecord:
        """Raises RecordNotFound if no record exists for ``battle_id``."""
        ...


class MemoryBattleStore(BattleStore):
    """Keeps serialized copies in a dict; useful for tests and one-off runs."""

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}

    def save(self, record: BattleRecord) -> None:
        self._records[record.id] = json.loads(json.dumps(record_to_dict(record)))

    def load(self, battle_id: str) -> BattleRecord:
        if battle_id not in self._records:
            raise RecordNotFound(battle_id)
        return record_from_dict(self._records[battle_id])


class JsonBattleStore(BattleStore):
    """One ``<battle id>.json`` file per record under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def _path(self, battle_id: str) -> Path:
        return self._directory / f"{battle_id}.json"

    def save(self, record: BattleRecord) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record_to_dict(record), indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
        logger.info("Battle record saved to: %s", path)

    def load(self, battle_id: str) -> BattleRecord:
        path = self._path(battle_id)
        if not path.exists():
            raise RecordNotFound(battle_id)
        return record_from_dict(json.loads(path.read_text(encoding="utf-8")))
