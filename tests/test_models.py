"""Tests for arena/models.py dataclasses."""

from arena.models import (
    BattleKind,
    BattleRecord,
    BattleStatus,
    Candidate,
    Constraints,
    ModelResponse,
    RoundResult,
    StopReason,
)
from arena.requirements import normalize


def test_model_response_optional_token_count():
    r = ModelResponse(provider="gemini", model="gemini-2.5-flash", content="Some answer.",
                      latency_sec=0.9, token_count=None)
    assert r.token_count is None
    assert r.cost == 0.0


def test_constraint_defaults():
    c = Constraints()
    assert c.max_latency_ms == 6000.0
    assert c.max_cost_per_1k == 0.5
    assert c.min_context_tokens == 8192


def test_candidate_defaults():
    c = Candidate(participant_id="claude", text="You are a tutor.", confidence=7.0)
    assert c.revisions == []
    assert c.probe_results == []
    assert c.fallback is False


def test_round_result_defaults():
    rnd = RoundResult(number=1)
    assert rnd.candidates == []
    assert rnd.champion_score is None
    assert rnd.degraded is False


def test_battle_record_starts_running():
    record = BattleRecord(
        id="x",
        kind=BattleKind.ANSWER,
        task="Why?",
        requirements=normalize("Why?"),
        roster=["a", "b"],
    )
    assert record.status == BattleStatus.RUNNING
    assert record.stop_reason is None
    assert record.winner is None
    assert record.persisted is False


def test_enums_are_string_valued():
    assert BattleKind("system_prompt") is BattleKind.SYSTEM_PROMPT
    assert StopReason.PLATEAU.value == "plateau"
