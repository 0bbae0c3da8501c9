"""Tests for arena/convergence.py: full battles against scripted participants."""

import asyncio
import random
from dataclasses import replace

import pytest

from config.config_loader import ModelConfig
from arena.catalog import StaticCatalog
from arena.convergence import (
    BattleRunner,
    Budget,
    _champion,
    _feedback_for,
    _swap_in,
    check_convergence,
    consecutive_plateaus,
    run_battle,
)
from arena.models import (
    BattleKind,
    BattleStatus,
    Candidate,
    Evaluation,
    ParticipantCapability,
    RoundResult,
    StopReason,
    TaskCategory,
)
from arena.store import BattleStore, MemoryBattleStore
from tests.conftest import ScriptedProvider, make_service


async def _no_sleep(_delay: float) -> None:
    return None


def _runner(config, *providers, catalog=None, store=None) -> BattleRunner:
    return BattleRunner(
        config,
        make_service(*providers),
        catalog or StaticCatalog([]),
        store=store,
        rng=random.Random(0),
        sleep=_no_sleep,
    )


def _round(number, consensus=False, plateau=False, champion="a", scores=None) -> RoundResult:
    return RoundResult(
        number=number,
        champion=champion,
        consensus_achieved=consensus,
        plateau_detected=plateau,
        scores=scores or {},
    )


# --- check_convergence ---

def test_no_rounds_yet_proceeds():
    assert check_convergence([], Budget(rounds_remaining=3)).proceed is True


def test_consensus_stops_first():
    rounds = [_round(1, plateau=True), _round(2, plateau=True), _round(3, consensus=True, plateau=True)]
    decision = check_convergence(rounds, Budget(rounds_remaining=0, cost_remaining=0.0))
    assert decision.proceed is False
    assert decision.stop_reason == StopReason.CONSENSUS


def test_budget_checked_before_plateau():
    rounds = [_round(i, plateau=True) for i in (1, 2, 3)]
    assert check_convergence(rounds, Budget(rounds_remaining=0)).stop_reason == StopReason.BUDGET
    assert check_convergence(rounds, Budget(rounds_remaining=2, cost_remaining=-0.1)).stop_reason == StopReason.BUDGET


def test_plateau_cap():
    rounds = [_round(1), _round(2, plateau=True), _round(3, plateau=True)]
    assert check_convergence(rounds, Budget(rounds_remaining=5), plateau_cap=3).proceed is True
    rounds.append(_round(4, plateau=True))
    assert check_convergence(rounds, Budget(rounds_remaining=5), plateau_cap=3).stop_reason == StopReason.PLATEAU


def test_consecutive_plateaus_counts_from_latest():
    rounds = [_round(1, plateau=True), _round(2), _round(3, plateau=True), _round(4, plateau=True)]
    assert consecutive_plateaus(rounds) == 2


def test_challenger_only_requested_when_continuing():
    calls = []

    def picker():
        calls.append(1)
        return "newcomer"

    decision = check_convergence([_round(1)], Budget(rounds_remaining=2), pick_challenger=picker)
    assert decision.challenger == "newcomer"
    check_convergence([_round(1, consensus=True)], Budget(rounds_remaining=2), pick_challenger=picker)
    assert len(calls) == 1


def test_swap_in_replaces_weakest_non_champion():
    result = _round(1, champion="a", scores={"a": 9.0, "b": 6.0, "c": 7.0})
    assert _swap_in(["a", "b", "c"], "d", result) == ["a", "d", "c"]


def test_feedback_skips_fallback_evaluations():
    result = _round(1, champion="a")
    result.evaluations = [
        Evaluation("b", "a", {}, "", suggestions=["Add an example", "Shorten it"]),
        Evaluation("c", "a", {}, "", suggestions=["Add an example"]),
        Evaluation("d", "a", {}, "", suggestions=["ignored"], fallback=True),
        Evaluation("a", "b", {}, "", suggestions=["not for the champion"]),
    ]
    assert _feedback_for(result) == ["Add an example", "Shorten it"]


# --- BattleRunner ---

async def test_consensus_on_first_round_stops(sample_app_config):
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=9.6), ScriptedProvider("beta", score=9.6))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"], max_rounds=3)

    assert record.status == BattleStatus.COMPLETED
    assert record.stop_reason == StopReason.CONSENSUS
    assert record.converged is True
    assert len(record.rounds) == 1
    assert record.winner == "alpha"
    assert record.final_text == "Improved prompt written by alpha."


async def test_configured_model_timeouts_reach_participants(sample_app_config):
    sample_app_config.models["alpha"] = ModelConfig(
        name="alpha", sdk="anthropic", model="m", api_key_env="K", timeout_sec=7, max_tokens=100,
    )
    alpha, beta = ScriptedProvider("alpha", score=9.6), ScriptedProvider("beta", score=9.6)

    await _runner(sample_app_config, alpha, beta).run("Explain recursion", roster=["alpha", "beta"], max_rounds=1)

    assert alpha.timeouts and set(alpha.timeouts) == {7.0}
    assert set(beta.timeouts) == {45.0}


async def test_technical_battle_runs_to_budget(sample_app_config):
    alpha = ScriptedProvider("alpha", score=6.0)   # alpha scores beta
    beta = ScriptedProvider("beta", score=8.0)     # beta scores alpha
    runner = _runner(sample_app_config, alpha, beta)

    record = await runner.run(
        "Implement a binary search in Python and document the code",
        kind=BattleKind.USER_PROMPT,
        roster=["alpha", "beta"],
        max_rounds=3,
        quality_threshold=9.5,
    )

    assert record.requirements.category == TaskCategory.TECHNICAL
    assert record.status == BattleStatus.COMPLETED
    assert record.stop_reason == StopReason.BUDGET
    assert len(record.rounds) == 3
    assert record.winner == "alpha"
    assert record.converged is False
    assert record.total_cost == pytest.approx(sum(r.cost for r in record.rounds))
    assert record.finished_at


async def test_later_rounds_carry_baseline_and_feedback(sample_app_config):
    alpha = ScriptedProvider("alpha", score=6.0)
    beta = ScriptedProvider("beta", score=8.0)
    runner = _runner(sample_app_config, alpha, beta)

    await runner.run("Explain recursion", roster=["alpha", "beta"], max_rounds=2)

    round_two = [p for p in beta.calls if p.startswith("GENERATE user prompt round 2")]
    assert round_two
    assert "Baseline: Improved prompt written by alpha." in round_two[0]
    assert "- Add an example" in round_two[0]


async def test_plateau_stops_after_three_flat_rounds(sample_app_config):
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=8.0), ScriptedProvider("beta", score=8.0))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"], max_rounds=6)

    assert record.stop_reason == StopReason.PLATEAU
    assert len(record.rounds) == 3
    assert all(r.plateau_detected for r in record.rounds)


async def test_answer_battle_is_single_round(sample_app_config):
    runner = _runner(sample_app_config, ScriptedProvider("alpha", text="Paris."), ScriptedProvider("beta"))

    record = await runner.run("What is the capital of France?", kind=BattleKind.ANSWER,
                              roster=["alpha", "beta"], max_rounds=3)

    assert record.stop_reason == StopReason.SINGLE_ROUND
    assert len(record.rounds) == 1
    assert record.final_text == "Paris."


async def test_cost_budget_stops_battle(sample_app_config):
    config = replace(sample_app_config, defaults=replace(sample_app_config.defaults, max_cost=0.001))
    runner = _runner(config, ScriptedProvider("alpha", score=6.0), ScriptedProvider("beta", score=8.0))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"], max_rounds=5)

    assert record.stop_reason == StopReason.BUDGET
    assert len(record.rounds) == 1


async def test_cancel_stops_battle(sample_app_config):
    cancel = asyncio.Event()
    cancel.set()
    runner = _runner(sample_app_config, ScriptedProvider("alpha"), ScriptedProvider("beta"))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"], cancel=cancel)

    assert record.stop_reason == StopReason.CANCELLED
    assert record.status == BattleStatus.COMPLETED
    assert len(record.rounds) == 1
    assert record.rounds[0].degraded is True


async def test_internal_error_returns_failed_record(sample_app_config):
    prompts = replace(sample_app_config.prompts, generation={"user_prompt": "Broken {missing_field}"})
    config = replace(sample_app_config, prompts=prompts)
    runner = _runner(config, ScriptedProvider("alpha"), ScriptedProvider("beta"))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"])

    assert record.status == BattleStatus.FAILED
    assert record.stop_reason == StopReason.ERROR
    assert "KeyError" in record.error
    assert record.winner is None
    assert record.final_text is None
    assert record.total_cost == 0.0


async def test_record_is_persisted(sample_app_config):
    store = MemoryBattleStore()
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=9.8), ScriptedProvider("beta", score=9.8),
                     store=store)

    record = await runner.run("Explain recursion", roster=["alpha", "beta"])

    assert record.persisted is True
    assert store.load(record.id).winner == record.winner


class _FlakyStore(BattleStore):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.saved = []

    def save(self, record):
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        self.saved.append(record.id)

    def load(self, battle_id):
        raise NotImplementedError


async def test_persistence_failure_keeps_outcome(sample_app_config):
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=9.8), ScriptedProvider("beta", score=9.8),
                     store=_FlakyStore(failures=5))

    record = await runner.run("Explain recursion", roster=["alpha", "beta"])

    assert record.status == BattleStatus.COMPLETED
    assert record.winner == "alpha"
    assert record.persisted is False
    assert record.persistence_error == "OSError: disk full"


async def test_persistence_retries_once(sample_app_config):
    store = _FlakyStore(failures=1)
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=9.8), ScriptedProvider("beta", score=9.8),
                     store=store)

    record = await runner.run("Explain recursion", roster=["alpha", "beta"])

    assert record.persisted is True
    assert record.persistence_error is None
    assert store.saved == [record.id]


def _capability(pid: str) -> ParticipantCapability:
    return ParticipantCapability(
        id=pid, context_tokens=128000, avg_latency_ms=1000, cost_per_1k_tokens=0.0005,
        tool_use=True, structured_output=True,
    )


async def test_roster_selected_from_catalog_and_skill_updated(sample_app_config):
    catalog = StaticCatalog([_capability("alpha"), _capability("beta")])
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=6.0), ScriptedProvider("beta", score=8.0),
                     catalog=catalog)

    record = await runner.run("Why is the sky blue?", max_rounds=1)

    assert sorted(record.roster) == ["alpha", "beta"]
    assert record.status == BattleStatus.COMPLETED
    assert catalog.get(record.winner).skill["reasoning"] > 1500


async def test_runner_context_manager_shuts_down_owned_state(sample_app_config):
    async with _runner(sample_app_config, ScriptedProvider("alpha"), ScriptedProvider("beta")) as runner:
        await runner.run("Explain recursion", roster=["alpha", "beta"], max_rounds=1)
        state = runner.state
    assert state.closed is True


def test_run_battle_sync_wrapper(sample_app_config):
    runner = _runner(sample_app_config, ScriptedProvider("alpha", score=9.7), ScriptedProvider("beta", score=9.7))
    record = run_battle(runner, "Explain recursion", roster=["alpha", "beta"])
    assert record.stop_reason == StopReason.CONSENSUS


def test_champion_candidate_lookup_matches_winner():
    result = _round(1, champion="b")
    result.candidates = [Candidate("a", "A text", 5.0), Candidate("b", "B text", 5.0)]
    assert _champion(result).text == "B text"
