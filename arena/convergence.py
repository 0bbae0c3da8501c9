"""Battle loop: run rounds until consensus, budget exhaustion or a score plateau.

``BattleRunner.run`` is the engine's public entry point. It never raises for
anything that happens inside a battle; failures come back as a BattleRecord
with ``status == BattleStatus.FAILED`` and a readable ``error``.
"""

import asyncio
import logging
import random
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from config.config_loader import AppConfig
from arena.catalog import ParticipantCatalog
from arena.models import (
    BattleKind,
    BattleRecord,
    BattleStatus,
    Candidate,
    RequirementSpec,
    RoundResult,
    StopReason,
)
from arena.orchestrator import RoundInput, RoundOrchestrator
from arena.progress import ProgressSink, safe_report
from arena.providers.base import TextGenerationService
from arena.requirements import normalize
from arena.resilience import EngineState, ResilientInvoker, Sleeper
from arena.selection import pick_challenger, select
from arena.store import BattleStore

logger = logging.getLogger(__name__)

_MAX_FEEDBACK_ITEMS = 5


@dataclass
class Budget:
    rounds_remaining: int
    cost_remaining: float | None = None   # None: no cost ceiling


@dataclass
class ConvergenceDecision:
    proceed: bool
    stop_reason: StopReason | None = None
    challenger: str | None = None


def consecutive_plateaus(rounds: list[RoundResult]) -> int:
    count = 0
    for result in reversed(rounds):
        if not result.plateau_detected:
            break
        count += 1
    return count


def check_convergence(
    rounds: list[RoundResult],
    budget: Budget,
    plateau_cap: int = 3,
    pick_challenger: Callable[[], str | None] | None = None,
) -> ConvergenceDecision:
    """Decide whether another round should run.

    Stop conditions, checked in order: consensus on the latest round, budget
    (rounds or cost) exhausted, ``plateau_cap`` consecutive plateau rounds.
    When the battle continues, ``pick_challenger`` (if given) proposes a new
    participant to field next round.
    """
    if not rounds:
        return ConvergenceDecision(proceed=budget.rounds_remaining > 0)

    latest = rounds[-1]
    if latest.consensus_achieved:
        return ConvergenceDecision(proceed=False, stop_reason=StopReason.CONSENSUS)
    if budget.rounds_remaining <= 0 or (budget.cost_remaining is not None and budget.cost_remaining <= 0):
        return ConvergenceDecision(proceed=False, stop_reason=StopReason.BUDGET)
    if consecutive_plateaus(rounds) >= plateau_cap:
        return ConvergenceDecision(proceed=False, stop_reason=StopReason.PLATEAU)

    challenger = pick_challenger() if pick_challenger else None
    return ConvergenceDecision(proceed=True, challenger=challenger)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _champion(result: RoundResult) -> Candidate:
    return next(c for c in result.candidates if c.participant_id == result.champion)


def _feedback_for(result: RoundResult) -> list[str]:
    """Distinct improvement suggestions the evaluators gave the champion."""
    seen: list[str] = []
    for evaluation in result.evaluations:
        if evaluation.target_id != result.champion or evaluation.fallback:
            continue
        for suggestion in evaluation.suggestions:
            if suggestion not in seen:
                seen.append(suggestion)
    return seen[:_MAX_FEEDBACK_ITEMS]


def _swap_in(roster: list[str], challenger: str, result: RoundResult) -> list[str]:
    """Replace the lowest-scoring non-champion with the challenger."""
    others = [pid for pid in roster if pid != result.champion]
    if not others:
        return roster + [challenger]

    def weakness(pid: str) -> tuple:
        score = result.scores.get(pid)
        return (score if score is not None else float("-inf"), pid)

    weakest = min(others, key=weakness)
    logger.info("Challenger %s replaces %s", challenger, weakest)
    return [challenger if pid == weakest else pid for pid in roster]


class BattleRunner:
    """Drives battles for one engine instance.

    Usage:
        async with BattleRunner(config, service, catalog, store=store) as runner:
            record = await runner.run("Write a system prompt for a SQL tutor",
                                      kind=BattleKind.SYSTEM_PROMPT)
    """

    def __init__(
        self,
        config: AppConfig,
        service: TextGenerationService,
        catalog: ParticipantCatalog,
        store: BattleStore | None = None,
        state: EngineState | None = None,
        progress: ProgressSink | None = None,
        rng: random.Random | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._config = config
        self._service = service
        self._catalog = catalog
        self._store = store
        self._owns_state = state is None
        self._state = state or EngineState(config.resilience)
        self._progress = progress
        self._rng = rng or random.Random(config.defaults.seed)
        self._invoker = ResilientInvoker(
            service,
            self._state,
            config.resilience,
            rng=self._rng,
            sleep=sleep,
            timeouts={name: float(m.timeout_sec) for name, m in config.models.items()},
        )
        evaluators = [e for e in config.defaults.evaluators if service.has(e)]
        self._orchestrator = RoundOrchestrator(
            self._invoker,
            config.prompts,
            config.defaults,
            config.scoring,
            rng=self._rng,
            progress=progress,
            evaluators=evaluators,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    async def __aenter__(self) -> "BattleRunner":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_state:
            self._state.shutdown()

    async def run(
        self,
        task: str,
        kind: BattleKind | None = None,
        requirements: RequirementSpec | None = None,
        roster: list[str] | None = None,
        max_rounds: int | None = None,
        quality_threshold: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BattleRecord:
        """Run a full battle and return its record. Never raises."""
        defaults = self._config.defaults
        kind = kind or BattleKind(defaults.kind)
        record = BattleRecord(
            id=uuid.uuid4().hex[:12],
            kind=kind,
            task=task,
            requirements=requirements,
            roster=list(roster or []),
            started_at=_now(),
        )
        try:
            record.requirements = requirements or normalize(task, kind)
            await self._battle(
                record,
                max_rounds=max(1, max_rounds or defaults.max_rounds),
                threshold=quality_threshold if quality_threshold is not None else defaults.quality_threshold,
                cancel=cancel,
            )
        except Exception as exc:
            logger.exception("Battle %s failed", record.id)
            record.status = BattleStatus.FAILED
            record.stop_reason = StopReason.ERROR
            record.error = f"{type(exc).__name__}: {exc}"
            record.winner = None
            record.final_text = None
            record.total_cost = 0.0
            record.converged = False
        record.finished_at = _now()
        self._persist(record)
        safe_report(self._progress, "complete", 100.0, f"Battle {record.id} {record.status.value}")
        return record

    async def _battle(
        self,
        record: BattleRecord,
        max_rounds: int,
        threshold: float,
        cancel: asyncio.Event | None,
    ) -> None:
        defaults = self._config.defaults
        requirements = record.requirements
        loop = asyncio.get_running_loop()
        battle_deadline = loop.time() + defaults.battle_timeout_sec

        if not record.roster:
            safe_report(self._progress, "selection", 0.0, "Selecting participants")
            record.roster = select(
                requirements,
                self._catalog.list(),
                rng=self._rng,
                roster_cap=defaults.roster_size,
                fallback_roster=defaults.default_roster or None,
            )
        if not record.roster:
            raise RuntimeError("No participants available for this battle")

        logger.info(
            "Battle %s: %s, %s, roster=%s, max_rounds=%d, threshold=%.2f",
            record.id, record.kind.value, requirements.category.value,
            ", ".join(record.roster), max_rounds, threshold,
        )

        roster = list(record.roster)
        baseline = record.task
        feedback: list[str] = []
        stop_reason: StopReason | None = None

        for number in range(1, max_rounds + 1):
            round_input = RoundInput(
                number=number,
                task=record.task,
                kind=record.kind,
                requirements=requirements,
                roster=list(roster),
                baseline=baseline,
                feedback=feedback,
                quality_threshold=threshold,
            )
            deadline = min(battle_deadline, loop.time() + defaults.round_timeout_sec)
            previous = record.rounds[-1] if record.rounds else None
            result = await self._orchestrator.run_round(round_input, previous, deadline, cancel)
            record.rounds.append(result)
            record.total_cost = round(record.total_cost + result.cost, 6)

            if cancel is not None and cancel.is_set():
                stop_reason = StopReason.CANCELLED
                break

            cost_remaining = defaults.max_cost - record.total_cost if defaults.max_cost > 0 else None
            if loop.time() >= battle_deadline:
                cost_remaining = 0.0
                logger.warning("Battle %s reached its time budget", record.id)

            swap = defaults.challenger_swap and record.kind != BattleKind.ANSWER
            decision = check_convergence(
                record.rounds,
                Budget(rounds_remaining=max_rounds - number, cost_remaining=cost_remaining),
                plateau_cap=self._config.scoring.plateau_cap,
                pick_challenger=(lambda: pick_challenger(requirements, self._catalog.list(), roster, self._rng))
                if swap else None,
            )
            if record.kind == BattleKind.ANSWER and decision.stop_reason != StopReason.CONSENSUS:
                stop_reason = StopReason.SINGLE_ROUND
                break
            if not decision.proceed:
                stop_reason = decision.stop_reason
                break

            baseline = _champion(result).text
            feedback = _feedback_for(result)
            if decision.challenger and self._service.has(decision.challenger):
                roster = _swap_in(roster, decision.challenger, result)

        final = record.rounds[-1]
        record.winner = final.champion
        record.final_text = _champion(final).text
        record.stop_reason = stop_reason or StopReason.BUDGET
        record.converged = record.stop_reason == StopReason.CONSENSUS
        record.status = BattleStatus.COMPLETED
        logger.info(
            "Battle %s completed: winner=%s after %d round(s), stop=%s, cost=$%.4f",
            record.id, record.winner, len(record.rounds), record.stop_reason.value, record.total_cost,
        )

        update_skill = getattr(self._catalog, "record_result", None)
        if update_skill is not None and not final.degraded:
            losers = [c.participant_id for c in final.candidates if c.participant_id != final.champion]
            update_skill(requirements.category, final.champion, losers)

    def _persist(self, record: BattleRecord) -> None:
        """Save once, retry once; a failed save never changes the battle outcome."""
        if self._store is None:
            return
        for attempt in (1, 2):
            try:
                self._store.save(record)
            except Exception as exc:
                record.persistence_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Saving battle %s failed (attempt %d): %s", record.id, attempt, exc)
                continue
            record.persisted = True
            record.persistence_error = None
            return
        logger.error("Battle %s was not persisted; result kept in memory only", record.id)


def run_battle(runner: BattleRunner, task: str, **kwargs) -> BattleRecord:
    """Blocking wrapper around ``BattleRunner.run`` for synchronous callers."""
    return asyncio.run(runner.run(task, **kwargs))
