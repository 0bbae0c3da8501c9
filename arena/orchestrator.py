"""Round orchestration: parallel generation, optional refinement and probes,
anonymized cross-evaluation, tabulation.

Each phase fans out one task per invocation and waits on a bounded barrier:
the round deadline or a cancel event ends the wait, and whatever finished is
tabulated. A participant's failure never aborts the round; it becomes a
fallback Candidate or a neutral fallback Evaluation instead.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Collection
from dataclasses import dataclass, field

from config.config_loader import DefaultsConfig, PromptsConfig, ScoringConfig
from arena import parsing
from arena.models import (
    BattleKind,
    Candidate,
    Evaluation,
    InvocationResult,
    ProbeResult,
    RequirementSpec,
    Revision,
    RoundResult,
)
from arena.progress import ProgressSink, safe_report
from arena.resilience import ResilientInvoker
from arena.scoring import aggregate, weighted_overall

logger = logging.getLogger(__name__)

# Self-reported confidence given to placeholder candidates so they lose every tie
_FALLBACK_CONFIDENCE = parsing.SCORE_MIN


@dataclass
class RoundInput:
    number: int
    task: str
    kind: BattleKind
    requirements: RequirementSpec
    roster: list[str]
    baseline: str                                   # text being improved this round
    feedback: list[str] = field(default_factory=list)  # suggestions carried from the previous round
    quality_threshold: float = 9.5


def generation_shape(kind: BattleKind) -> parsing.ExpectedShape:
    return parsing.ANSWER if kind == BattleKind.ANSWER else parsing.GENERATION


def build_probes(requirements: RequirementSpec) -> list[tuple[str, str]]:
    """(probe_type, question) pairs derived from the requirement record."""
    probes = [
        ("ambiguous_terms",
         "Does the candidate resolve every term in the task that could be read more than one way?"),
        ("locale_constraints",
         f"Does the candidate account for the conventions and context of a {requirements.locale} audience?"),
        ("format_compliance",
         f"Does the candidate honor the required output format ({requirements.output_format})?"),
    ]
    if "web_search" in requirements.required_capabilities:
        probes.append((
            "data_availability",
            "Does the candidate avoid asserting current facts that cannot be verified without a live search?",
        ))
    return probes


def anonymize(candidates: list[Candidate], rng: random.Random) -> dict[str, str]:
    """Shuffle candidates and give each an anonymous label.

    Returns:
        participant_id -> "Candidate A" style label.
    """
    shuffled = [c.participant_id for c in candidates]
    rng.shuffle(shuffled)
    return {pid: f"Candidate {chr(ord('A') + i)}" for i, pid in enumerate(shuffled)}


async def bounded_gather(
    aws: list[Awaitable],
    deadline: float,
    cancel: asyncio.Event | None = None,
) -> list:
    """Run awaitables concurrently until all finish, the deadline passes or cancel is set.

    Returns one entry per awaitable: its result, the exception it raised, or
    None if it had not finished. Unfinished tasks are cancelled.
    """
    loop = asyncio.get_running_loop()
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []

    cancel_waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    pending = set(tasks)
    try:
        while pending:
            if cancel is not None and cancel.is_set():
                logger.warning("Round cancelled with %d invocation(s) outstanding", len(pending))
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Round deadline reached with %d invocation(s) outstanding", len(pending))
                break
            wait_on = pending | {cancel_waiter} if cancel_waiter is not None else pending
            done, _ = await asyncio.wait(wait_on, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            pending -= done
    finally:
        for task in pending:
            task.cancel()
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    results = []
    for task in tasks:
        if task.cancelled() or not task.done():
            results.append(None)
        elif task.exception() is not None:
            results.append(task.exception())
        else:
            results.append(task.result())
    return results


class RoundOrchestrator:
    """Runs one Generation -> Critique/Evaluation -> Tabulation cycle."""

    def __init__(
        self,
        invoker: ResilientInvoker,
        prompts: PromptsConfig,
        defaults: DefaultsConfig,
        scoring: ScoringConfig,
        rng: random.Random | None = None,
        progress: ProgressSink | None = None,
        evaluators: list[str] | None = None,
    ) -> None:
        self._invoker = invoker
        self._prompts = prompts
        self._defaults = defaults
        self._scoring = scoring
        self._rng = rng or random.Random()
        self._progress = progress
        self._evaluators = list(evaluators or [])

    async def run_round(
        self,
        round_input: RoundInput,
        previous: RoundResult | None = None,
        deadline: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RoundResult:
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = loop.time() + self._defaults.round_timeout_sec
        costs: list[float] = []
        n = round_input.number

        safe_report(self._progress, "generation", 0.0, f"Round {n}: generating candidates")
        candidates = await self._generation_phase(round_input, costs, deadline, cancel)

        if self._defaults.self_refine:
            safe_report(self._progress, "refinement", 25.0, f"Round {n}: self-critique pass")
            await self._refinement_phase(round_input, candidates, costs, deadline, cancel)

        if self._defaults.probes:
            safe_report(self._progress, "probes", 40.0, f"Round {n}: adversarial probes")
            await self._probe_phase(round_input, candidates, costs, deadline, cancel)

        safe_report(self._progress, "evaluation", 50.0, f"Round {n}: cross-evaluation")
        evaluations = await self._evaluation_phase(round_input, candidates, costs, deadline, cancel)

        safe_report(self._progress, "tabulation", 90.0, f"Round {n}: tabulating")
        result = self._tabulate(round_input, candidates, evaluations, costs, previous)
        safe_report(
            self._progress, "tabulation", 100.0,
            f"Round {n}: champion {result.champion} ({_fmt(result.champion_score)})",
        )
        return result

    # --- generation ---

    async def _generation_phase(
        self,
        round_input: RoundInput,
        costs: list[float],
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> list[Candidate]:
        template = self._prompts.generation[round_input.kind.value]
        prompt = template.format(**self._prompt_fields(round_input))
        logger.info("Round %d: generation with %d participants", round_input.number, len(round_input.roster))

        results = await bounded_gather(
            [self._generate_one(pid, prompt, round_input, costs) for pid in round_input.roster],
            deadline,
            cancel,
        )

        candidates: list[Candidate] = []
        for pid, result in zip(round_input.roster, results):
            if isinstance(result, Candidate):
                candidates.append(result)
            elif isinstance(result, Exception):
                logger.warning("Generation for %s failed unexpectedly: %s", pid, result)
                candidates.append(self._fallback_candidate(pid, round_input))
            # None: unfinished at the deadline, dropped

        if not candidates:
            logger.error("Round %d: no candidate finished, using placeholders", round_input.number)
            candidates = [self._fallback_candidate(pid, round_input) for pid in round_input.roster]
        return candidates

    async def _generate_one(
        self,
        participant_id: str,
        prompt: str,
        round_input: RoundInput,
        costs: list[float],
    ) -> Candidate:
        result = await self._invoke(participant_id, prompt, costs, self._defaults.generation_max_tokens,
                                    self._defaults.generation_temperature,
                                    exclude=round_input.roster)
        if result.synthetic:
            return self._fallback_candidate(participant_id, round_input, cost=result.cost)

        shape = generation_shape(round_input.kind)
        parsed = parsing.parse(result.text, shape, round_input.requirements.category, round_input.baseline)
        if parsed.confidence < 0.5:
            logger.info("Low parse confidence %.2f for %s candidate", parsed.confidence, participant_id)
        return Candidate(
            participant_id=participant_id,
            text=parsed.get(shape.main),
            confidence=parsed.get("CONFIDENCE"),
            rationale=parsed.get("RATIONALE"),
            parse_confidence=parsed.confidence,
            cost=result.cost,
        )

    def _fallback_candidate(self, participant_id: str, round_input: RoundInput, cost: float = 0.0) -> Candidate:
        shape = generation_shape(round_input.kind)
        defaults = parsing.synthesize_defaults(
            shape, [f for f in shape.fields if f.name == shape.main],
            round_input.requirements.category, round_input.baseline,
        )
        return Candidate(
            participant_id=participant_id,
            text=defaults[shape.main],
            confidence=_FALLBACK_CONFIDENCE,
            rationale="[placeholder: participant unavailable]",
            parse_confidence=0.0,
            fallback=True,
            cost=cost,
        )

    # --- self-critique ---

    async def _refinement_phase(
        self,
        round_input: RoundInput,
        candidates: list[Candidate],
        costs: list[float],
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> None:
        if not self._prompts.refine:
            logger.warning("Self-refinement enabled but no refine prompt configured, skipping")
            return
        targets = [c for c in candidates if not c.fallback]
        results = await bounded_gather(
            [self._refine_one(c, round_input, costs) for c in targets], deadline, cancel,
        )
        for candidate, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Refinement for %s failed unexpectedly: %s", candidate.participant_id, result)

    async def _refine_one(self, candidate: Candidate, round_input: RoundInput, costs: list[float]) -> None:
        prompt = self._prompts.refine.format(candidate=candidate.text, **self._prompt_fields(round_input))
        result = await self._invoke(candidate.participant_id, prompt, costs,
                                    self._defaults.generation_max_tokens, self._defaults.generation_temperature,
                                    exclude=round_input.roster)
        candidate.cost += result.cost
        if result.synthetic:
            return
        parsed = parsing.parse(result.text, parsing.REFINE, round_input.requirements.category, candidate.text)
        if "REVISED_TEXT" in parsed.synthesized:
            logger.info("No usable revision from %s, keeping original", candidate.participant_id)
            return
        candidate.revisions.append(Revision(text=parsed.get("REVISED_TEXT"), rationale=parsed.get("WEAKNESSES")))
        candidate.text = parsed.get("REVISED_TEXT")

    # --- probes ---

    async def _probe_phase(
        self,
        round_input: RoundInput,
        candidates: list[Candidate],
        costs: list[float],
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> None:
        if not self._prompts.probe:
            logger.warning("Probes enabled but no probe prompt configured, skipping")
            return
        probes = build_probes(round_input.requirements)
        jobs = []
        for candidate in candidates:
            judge = self._probe_judge(candidate.participant_id, round_input.roster)
            if judge is None or candidate.fallback:
                continue
            for probe_type, question in probes:
                jobs.append((candidate, self._probe_one(judge, candidate, probe_type, question, round_input, costs)))

        results = await bounded_gather([job for _, job in jobs], deadline, cancel)
        for (candidate, _), result in zip(jobs, results):
            if isinstance(result, ProbeResult):
                candidate.probe_results.append(result)
            elif isinstance(result, Exception):
                logger.warning("Probe on %s failed unexpectedly: %s", candidate.participant_id, result)

    def _probe_judge(self, author: str, roster: list[str]) -> str | None:
        """Next participant after the author in roster order."""
        if author not in roster:
            return next((p for p in roster if p != author), None)
        i = roster.index(author)
        for offset in range(1, len(roster)):
            judge = roster[(i + offset) % len(roster)]
            if judge != author:
                return judge
        return None

    async def _probe_one(
        self,
        judge: str,
        candidate: Candidate,
        probe_type: str,
        question: str,
        round_input: RoundInput,
        costs: list[float],
    ) -> ProbeResult | None:
        prompt = self._prompts.probe.format(
            candidate=candidate.text, question=question, probe_type=probe_type,
            **self._prompt_fields(round_input),
        )
        result = await self._invoke(judge, prompt, costs, self._defaults.evaluation_max_tokens,
                                    self._defaults.evaluation_temperature,
                                    exclude={candidate.participant_id})
        if result.synthetic:
            return None
        parsed = parsing.parse(result.text, parsing.PROBE, round_input.requirements.category)
        if "VERDICT" in parsed.synthesized:
            return None
        return ProbeResult(
            probe_type=probe_type,
            question=question,
            passed=parsed.get("VERDICT") == "PASS",
            notes=parsed.get("NOTES", ""),
        )

    # --- evaluation ---

    def evaluators_for(self, roster: list[str]) -> list[str]:
        return self._evaluators or list(roster)

    async def _evaluation_phase(
        self,
        round_input: RoundInput,
        candidates: list[Candidate],
        costs: list[float],
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> list[Evaluation]:
        labels = anonymize(candidates, self._rng)
        logger.debug("Round %d anonymization map: %s", round_input.number, labels)

        pairs = [
            (evaluator, candidate)
            for candidate in candidates
            for evaluator in self.evaluators_for(round_input.roster)
            if evaluator != candidate.participant_id
        ]
        logger.info("Round %d: %d evaluations", round_input.number, len(pairs))

        results = await bounded_gather(
            [self._evaluate_one(ev, c, labels[c.participant_id], round_input, costs) for ev, c in pairs],
            deadline,
            cancel,
        )
        evaluations: list[Evaluation] = []
        for (evaluator, candidate), result in zip(pairs, results):
            if isinstance(result, Evaluation):
                evaluations.append(result)
            elif isinstance(result, Exception):
                logger.warning("Evaluation %s -> %s failed unexpectedly: %s",
                               evaluator, candidate.participant_id, result)
                evaluations.append(self._fallback_evaluation(evaluator, candidate.participant_id, round_input))
        return evaluations

    async def _evaluate_one(
        self,
        evaluator: str,
        candidate: Candidate,
        label: str,
        round_input: RoundInput,
        costs: list[float],
    ) -> Evaluation:
        prompt = self._prompts.evaluation.format(
            candidate=candidate.text, candidate_label=label, **self._prompt_fields(round_input),
        )
        result = await self._invoke(evaluator, prompt, costs, self._defaults.evaluation_max_tokens,
                                    self._defaults.evaluation_temperature,
                                    exclude={candidate.participant_id})
        if result.synthetic:
            return self._fallback_evaluation(evaluator, candidate.participant_id, round_input)

        parsed = parsing.parse(result.text, parsing.EVALUATION, round_input.requirements.category)
        scores = {name: parsed.get(name.upper()) for name in parsing.SUB_SCORES}
        return Evaluation(
            evaluator_id=evaluator,
            target_id=candidate.participant_id,
            scores=scores,
            rationale=parsed.get("CRITIQUE"),
            suggestions=parsed.get("SUGGESTIONS", []),
            overall=weighted_overall(scores, self._scoring.weights.get(round_input.kind.value)),
            parse_confidence=parsed.confidence,
        )

    def _fallback_evaluation(self, evaluator: str, target: str, round_input: RoundInput) -> Evaluation:
        neutral = self._scoring.neutral_score
        scores = {name: neutral for name in parsing.SUB_SCORES}
        return Evaluation(
            evaluator_id=evaluator,
            target_id=target,
            scores=scores,
            rationale="[placeholder: evaluator unavailable]",
            overall=weighted_overall(scores, self._scoring.weights.get(round_input.kind.value)),
            parse_confidence=0.0,
            fallback=True,
        )

    # --- tabulation ---

    def _tabulate(
        self,
        round_input: RoundInput,
        candidates: list[Candidate],
        evaluations: list[Evaluation],
        costs: list[float],
        previous: RoundResult | None,
    ) -> RoundResult:
        agg = aggregate(evaluations, candidates, self._scoring, round_input.quality_threshold)
        improvement = None
        if previous is not None and previous.champion_score is not None and agg.champion_score is not None:
            improvement = round(agg.champion_score - previous.champion_score, 4)

        result = RoundResult(
            number=round_input.number,
            candidates=candidates,
            evaluations=evaluations,
            scores=agg.scores,
            champion=agg.champion,
            champion_score=agg.champion_score,
            consensus_achieved=agg.consensus_achieved,
            consensus_strength=agg.consensus_strength,
            plateau_detected=agg.plateau_detected,
            spread=agg.spread,
            improvement=improvement,
            cost=round(sum(costs), 6),
            degraded=all(c.fallback for c in candidates),
        )
        logger.info(
            "Round %d complete: champion=%s score=%s consensus=%s plateau=%s spread=%.2f",
            result.number, result.champion, _fmt(result.champion_score),
            result.consensus_achieved, result.plateau_detected, result.spread,
        )
        if result.degraded:
            logger.warning("Round %d degraded: every candidate is a placeholder", result.number)
        return result

    # --- helpers ---

    async def _invoke(
        self,
        participant_id: str,
        prompt: str,
        costs: list[float],
        max_tokens: int,
        temperature: float,
        exclude: Collection[str] = (),
    ) -> InvocationResult:
        result = await self._invoker.invoke(participant_id, prompt, max_tokens, temperature, exclude=exclude)
        costs.append(result.cost)
        return result

    @staticmethod
    def _prompt_fields(round_input: RoundInput) -> dict[str, object]:
        req = round_input.requirements
        feedback = "\n".join(f"- {s}" for s in round_input.feedback) or "(none yet)"
        return {
            "task": round_input.task,
            "baseline": round_input.baseline,
            "category": req.category.value,
            "locale": req.locale,
            "output_format": req.output_format,
            "capabilities": ", ".join(sorted(req.required_capabilities)) or "none",
            "round": round_input.number,
            "feedback": feedback,
        }


def _fmt(score: float | None) -> str:
    return "n/a" if score is None else f"{score:.2f}"
