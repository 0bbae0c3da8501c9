"""Resilient invocation: retry with backoff, per-participant circuit breaking,
rate-limit cool-downs and an ordered fallback ladder.

Every call made through ``ResilientInvoker.invoke`` returns an
``InvocationResult``; transport failures never escape this module. The
``EngineState`` object owns all per-participant mutable state (breakers,
reliability estimates, cool-downs, rate windows) so that several battles can
share it, or be isolated from each other, without module-level globals.

Usage:
    state = EngineState(config.resilience)
    invoker = ResilientInvoker(service, state, config.resilience)
    result = await invoker.invoke("llama-70b", prompt, max_tokens=800, temperature=0.4)
    if result.synthetic:
        ...
    state.shutdown()
"""

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field

from config.config_loader import ResilienceConfig
from arena.models import InvocationResult, ModelResponse
from arena.providers.base import (
    ProviderError,
    ProviderTimeout,
    RateLimited,
    TextGenerationService,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

_RATE_WINDOW_SEC = 60.0
_HEALTH_WINDOW = 20
_CLASS_RANK = {"excellent": 0, "good": 1, "poor": 2}

SYNTHETIC_MARKER = "[SYNTHETIC PLACEHOLDER]"


class EngineStateClosed(RuntimeError):
    """Raised when an invoker is used after its EngineState was shut down."""


class CircuitOpen(ProviderError):
    """A direct call was refused by the target's circuit breaker."""


@dataclass
class CircuitBreaker:
    """
    Per-participant circuit breaker.

    - CLOSED: calls allowed.
    - OPEN: ``failure_threshold`` consecutive failures inside
      ``failure_window_sec``; calls blocked for ``recovery_timeout_sec``.
    - HALF-OPEN: recovery timeout elapsed; a single trial call is allowed
      (claimed through ``allow_request``). A success closes the circuit, a
      failure re-opens it.
    """

    failure_threshold: int = 3
    failure_window_sec: float = 300.0
    recovery_timeout_sec: float = 30.0
    clock: Clock = field(default=time.monotonic, repr=False)

    _failure_times: list[float] = field(default_factory=list, repr=False)
    _opened_at: float | None = field(default=None, repr=False)
    _trial_in_flight: bool = field(default=False, repr=False)

    @property
    def failures(self) -> int:
        return len(self._failure_times)

    def get_status(self) -> str:
        """Return 'closed', 'open' or 'half-open'."""
        if self._opened_at is None:
            return "closed"
        if self.clock() - self._opened_at >= self.recovery_timeout_sec:
            return "half-open"
        return "open"

    def can_proceed(self) -> bool:
        status = self.get_status()
        return status == "closed" or (status == "half-open" and not self._trial_in_flight)

    def allow_request(self) -> bool:
        """Claim one direct call. While half-open only the first caller gets the trial."""
        status = self.get_status()
        if status == "closed":
            return True
        if status == "half-open" and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def release_trial(self) -> None:
        self._trial_in_flight = False

    def cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout_sec - (self.clock() - self._opened_at))

    def record_failure(self) -> bool:
        """Record a failure. Returns True if the circuit just opened."""
        now = self.clock()
        self._trial_in_flight = False
        if self.get_status() == "half-open":
            self._opened_at = now
            logger.warning("Circuit breaker re-OPENED after failed trial call")
            return True

        self._failure_times = [t for t in self._failure_times if now - t <= self.failure_window_sec]
        self._failure_times.append(now)
        if self._opened_at is None and len(self._failure_times) >= self.failure_threshold:
            self._opened_at = now
            return True
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker CLOSED")
        self._opened_at = None
        self._trial_in_flight = False
        self._failure_times.clear()

    def reset(self) -> None:
        self._opened_at = None
        self._trial_in_flight = False
        self._failure_times.clear()


@dataclass
class _Outcome:
    success: bool
    latency_sec: float
    quality: float


@dataclass
class ParticipantHealth:
    """Rolling success-rate / latency / quality estimate for one participant."""

    window: int = _HEALTH_WINDOW
    _outcomes: deque = field(default_factory=deque, repr=False)

    def record(self, success: bool, latency_sec: float, quality: float) -> None:
        self._outcomes.append(_Outcome(success, latency_sec, quality))
        while len(self._outcomes) > self.window:
            self._outcomes.popleft()

    @property
    def samples(self) -> int:
        return len(self._outcomes)

    @property
    def success_rate(self) -> float:
        if not self._outcomes:
            return 1.0
        return sum(1 for o in self._outcomes if o.success) / len(self._outcomes)

    @property
    def avg_latency_sec(self) -> float:
        latencies = [o.latency_sec for o in self._outcomes if o.success]
        return sum(latencies) / len(latencies) if latencies else 0.0

    @property
    def avg_quality(self) -> float:
        if not self._outcomes:
            return 1.0
        return sum(o.quality for o in self._outcomes) / len(self._outcomes)

    def classification(self) -> str:
        """'excellent', 'good' or 'poor'. Participants without history count as good."""
        if not self._outcomes:
            return "good"
        if self.success_rate >= 0.9 and self.avg_quality >= 0.8:
            return "excellent"
        if self.success_rate >= 0.6:
            return "good"
        return "poor"


@dataclass
class _RateWindow:
    count: int
    reset_at: float


class EngineState:
    """All per-participant mutable state for one engine instance.

    Mutations for a given participant happen under that participant's lock;
    different participants never contend.
    """

    def __init__(self, config: ResilienceConfig | None = None, clock: Clock = time.monotonic) -> None:
        self._config = config or ResilienceConfig()
        self.clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._health: dict[str, ParticipantHealth] = {}
        self._cooldown_until: dict[str, float] = {}
        self._rate_windows: dict[str, _RateWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_loop: asyncio.AbstractEventLoop | None = None
        self.closed = False

    async def __aenter__(self) -> "EngineState":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.shutdown()

    def lock(self, participant_id: str) -> asyncio.Lock:
        # asyncio locks belong to one event loop; a new loop gets fresh locks
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            self._locks.clear()
            self._locks_loop = loop
        if participant_id not in self._locks:
            self._locks[participant_id] = asyncio.Lock()
        return self._locks[participant_id]

    def breaker(self, participant_id: str) -> CircuitBreaker:
        if participant_id not in self._breakers:
            self._breakers[participant_id] = CircuitBreaker(
                failure_threshold=self._config.failure_threshold,
                failure_window_sec=self._config.failure_window_sec,
                recovery_timeout_sec=self._config.recovery_timeout_sec,
                clock=self.clock,
            )
        return self._breakers[participant_id]

    def health(self, participant_id: str) -> ParticipantHealth:
        if participant_id not in self._health:
            self._health[participant_id] = ParticipantHealth()
        return self._health[participant_id]

    def cooldown_remaining(self, participant_id: str) -> float:
        until = self._cooldown_until.get(participant_id, 0.0)
        return max(0.0, until - self.clock())

    def set_cooldown(self, participant_id: str, delay_sec: float) -> None:
        until = self.clock() + delay_sec
        if until > self._cooldown_until.get(participant_id, 0.0):
            self._cooldown_until[participant_id] = until

    def take_rate_slot(self, participant_id: str) -> float:
        """Count one request against the rolling window.

        Returns 0.0 when the request may proceed, otherwise the seconds until
        the window resets (nothing is counted in that case).
        """
        now = self.clock()
        window = self._rate_windows.get(participant_id)
        if window is None or now >= window.reset_at:
            window = _RateWindow(count=0, reset_at=now + _RATE_WINDOW_SEC)
            self._rate_windows[participant_id] = window
        if window.count >= self._config.rate_limit_per_minute:
            return window.reset_at - now
        window.count += 1
        return 0.0

    def reliability_report(self) -> dict[str, dict]:
        participants = set(self._breakers) | set(self._health)
        return {
            pid: {
                "status": self.breaker(pid).get_status(),
                "classification": self.health(pid).classification(),
                "success_rate": round(self.health(pid).success_rate, 3),
                "avg_latency_sec": round(self.health(pid).avg_latency_sec, 3),
                "samples": self.health(pid).samples,
            }
            for pid in sorted(participants)
        }

    def shutdown(self) -> None:
        """Drop all tracked state. The instance refuses further invocations."""
        self._breakers.clear()
        self._health.clear()
        self._cooldown_until.clear()
        self._rate_windows.clear()
        self._locks.clear()
        self.closed = True
        logger.debug("Engine state shut down")


# --- Fallback ladder -------------------------------------------------------

@dataclass(frozen=True)
class Retry:
    """Call the requested participant up to max_attempts times with backoff."""

    max_attempts: int = 4


@dataclass(frozen=True)
class AlternateParticipant:
    """One call each on up to max_alternates other participants, with reduced budgets."""

    max_alternates: int = 2
    max_tokens: int = 300
    temperature: float = 0.5
    timeout_sec: float = 20.0


@dataclass(frozen=True)
class ReducedScope:
    """Truncated prompt on the same participant (if its circuit allows) or an alternate."""

    max_prompt_chars: int = 300
    max_tokens: int = 150
    temperature: float = 0.3


@dataclass(frozen=True)
class Synthesize:
    """Clearly-labeled placeholder text; never fails."""


RecoveryStrategy = Retry | AlternateParticipant | ReducedScope | Synthesize


def default_ladder(config: ResilienceConfig) -> list[RecoveryStrategy]:
    return [
        Retry(max_attempts=config.max_attempts),
        AlternateParticipant(
            max_alternates=config.max_alternates,
            max_tokens=config.fallback_max_tokens,
            temperature=config.fallback_temperature,
            timeout_sec=config.fallback_timeout_sec,
        ),
        ReducedScope(
            max_prompt_chars=config.reduced_prompt_chars,
            max_tokens=config.reduced_max_tokens,
        ),
        Synthesize(),
    ]


def truncate_prompt(prompt: str, max_chars: int) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[:max_chars].rstrip() + "..."


@dataclass
class _Call:
    participant_id: str
    prompt: str
    max_tokens: int
    temperature: float
    timeout_sec: float | None
    exclude: frozenset[str] = frozenset()
    attempts: int = 0
    last_error: str = ""


class ResilientInvoker:
    """Wraps TextGenerationService calls with the fallback ladder.

    ``timeouts`` maps participant ids to their configured request timeout;
    participants without an entry use ``default_timeout_sec``.
    """

    def __init__(
        self,
        service: TextGenerationService,
        state: EngineState,
        config: ResilienceConfig | None = None,
        ladder: list[RecoveryStrategy] | None = None,
        rng: random.Random | None = None,
        sleep: Sleeper = asyncio.sleep,
        default_timeout_sec: float = 45.0,
        timeouts: dict[str, float] | None = None,
    ) -> None:
        self._service = service
        self._state = state
        self._config = config or ResilienceConfig()
        self._ladder = ladder if ladder is not None else default_ladder(self._config)
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._default_timeout_sec = default_timeout_sec
        self._timeouts = dict(timeouts or {})

    @property
    def state(self) -> EngineState:
        return self._state

    async def invoke(
        self,
        participant_id: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
        timeout_sec: float | None = None,
        exclude: Collection[str] = (),
    ) -> InvocationResult:
        """Invoke a participant, walking the fallback ladder until something answers.

        Participants in ``exclude`` are never used as stand-ins for
        ``participant_id`` (alternate or reduced-scope calls).
        """
        if self._state.closed:
            raise EngineStateClosed("EngineState has been shut down")

        call = _Call(
            participant_id=participant_id,
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout_sec=timeout_sec,
            exclude=frozenset(exclude),
        )
        for strategy in self._ladder:
            result = await self._recover(strategy, call)
            if result is not None:
                return result

        logger.error("Fallback ladder for %s ended without a result", participant_id)
        return await self._synthesize(call)

    async def _recover(self, strategy: RecoveryStrategy, call: _Call) -> InvocationResult | None:
        if isinstance(strategy, Retry):
            return await self._retry(strategy, call)
        if isinstance(strategy, AlternateParticipant):
            return await self._alternate(strategy, call)
        if isinstance(strategy, ReducedScope):
            return await self._reduced_scope(strategy, call)
        if isinstance(strategy, Synthesize):
            return await self._synthesize(call)
        raise TypeError(f"Unknown recovery strategy: {strategy!r}")

    # --- strategies ---

    async def _retry(self, strategy: Retry, call: _Call) -> InvocationResult | None:
        pid = call.participant_id
        if not self._service.has(pid):
            call.last_error = "unknown participant"
            return None

        for attempt in range(strategy.max_attempts):
            if not self._state.breaker(pid).can_proceed():
                logger.warning(
                    "Circuit OPEN for %s (%.1fs remaining), skipping direct call",
                    pid, self._state.breaker(pid).cooldown_remaining(),
                )
                return None

            await self._wait_for_capacity(pid)
            try:
                response = await self._call_once(call, pid, call.prompt, call.max_tokens,
                                                 call.temperature, self._timeout_for(call, pid))
            except CircuitOpen:
                logger.warning("Circuit for %s refused the call, skipping direct call", pid)
                return None
            except RateLimited as exc:
                delay = self._rate_limit_delay(attempt, exc.retry_after)
                self._state.set_cooldown(pid, delay)
                logger.warning("%s rate limited (attempt %d), cooling down %.1fs", pid, attempt + 1, delay)
                continue
            except ProviderError as exc:
                if attempt + 1 < strategy.max_attempts:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s failed (attempt %d/%d): %s, retrying in %.1fs",
                        pid, attempt + 1, strategy.max_attempts, exc, delay,
                    )
                    await self._sleep(delay)
                else:
                    logger.warning("%s failed after %d attempts: %s", pid, strategy.max_attempts, exc)
                continue
            return self._result(call, response, fallback_used=None)
        return None

    async def _alternate(self, strategy: AlternateParticipant, call: _Call) -> InvocationResult | None:
        for alt in self._alternates(call)[: strategy.max_alternates]:
            logger.info("Trying alternate participant %s for %s", alt, call.participant_id)
            try:
                response = await self._call_once(
                    call,
                    alt,
                    call.prompt,
                    min(call.max_tokens, strategy.max_tokens),
                    min(call.temperature, strategy.temperature),
                    min(self._timeout_for(call, alt), strategy.timeout_sec),
                )
            except ProviderError as exc:
                logger.warning("Alternate %s failed: %s", alt, exc)
                continue
            return self._result(call, response, fallback_used="alternate")
        return None

    async def _reduced_scope(self, strategy: ReducedScope, call: _Call) -> InvocationResult | None:
        targets: list[str] = []
        if self._service.has(call.participant_id) and self._state.breaker(call.participant_id).can_proceed():
            targets.append(call.participant_id)
        targets.extend(self._alternates(call)[:1])

        short_prompt = truncate_prompt(call.prompt, strategy.max_prompt_chars)
        for target in targets:
            try:
                response = await self._call_once(
                    call,
                    target,
                    short_prompt,
                    min(call.max_tokens, strategy.max_tokens),
                    min(call.temperature, strategy.temperature),
                    self._timeout_for(call, target),
                )
            except ProviderError as exc:
                logger.warning("Reduced-scope call on %s failed: %s", target, exc)
                continue
            return self._result(call, response, fallback_used="reduced_scope")
        return None

    async def _synthesize(self, call: _Call) -> InvocationResult:
        pid = call.participant_id
        reason = call.last_error or "no participant answered"
        logger.error("All recovery strategies exhausted for %s: %s", pid, reason)
        async with self._state.lock(pid):
            self._state.health(pid).record(success=False, latency_sec=0.0, quality=0.0)
        return InvocationResult(
            participant_id=pid,
            served_by=pid,
            text=f"{SYNTHETIC_MARKER} {pid} was unavailable ({reason}). No model output was produced.",
            tokens_used=0,
            cost=0.0,
            latency_sec=0.0,
            attempts=call.attempts,
            fallback_used="synthetic",
            synthetic=True,
        )

    # --- helpers ---

    async def _call_once(
        self,
        call: _Call,
        target: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
        timeout_sec: float,
    ) -> ModelResponse:
        """One direct call; records the outcome on the target's breaker and health."""
        async with self._state.lock(target):
            breaker = self._state.breaker(target)
            trial = breaker.get_status() == "half-open"
            if not breaker.allow_request():
                call.last_error = f"[{target}] circuit open"
                raise CircuitOpen(target, "circuit open")

        call.attempts += 1
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._service.invoke(target, prompt, max_tokens, temperature, timeout_sec),
                timeout=timeout_sec,
            )
        except asyncio.CancelledError:
            if trial:
                breaker.release_trial()
            raise
        except TimeoutError as exc:
            error: ProviderError = ProviderTimeout(target, f"Request timed out after {timeout_sec}s")
            await self._record_failure(target, time.monotonic() - start)
            call.last_error = str(error)
            raise error from exc
        except ProviderError as exc:
            await self._record_failure(target, time.monotonic() - start)
            call.last_error = str(exc)
            raise

        quality = 1.0 if target == call.participant_id and prompt == call.prompt else 0.5
        async with self._state.lock(target):
            self._state.breaker(target).record_success()
            self._state.health(target).record(success=True, latency_sec=response.latency_sec, quality=quality)
        return response

    async def _record_failure(self, target: str, latency_sec: float) -> None:
        async with self._state.lock(target):
            opened = self._state.breaker(target).record_failure()
            self._state.health(target).record(success=False, latency_sec=latency_sec, quality=0.0)
        if opened:
            logger.warning(
                "Circuit breaker OPEN for %s after %d failures",
                target, self._state.breaker(target).failures,
            )

    async def _wait_for_capacity(self, participant_id: str) -> None:
        cooldown = self._state.cooldown_remaining(participant_id)
        if cooldown > 0:
            logger.info("%s cooling down, waiting %.1fs", participant_id, cooldown)
            await self._sleep(cooldown)
        while True:
            async with self._state.lock(participant_id):
                wait = self._state.take_rate_slot(participant_id)
            if wait <= 0:
                return
            logger.info("%s rate window full, waiting %.1fs", participant_id, wait)
            await self._sleep(wait)

    def _timeout_for(self, call: _Call, target: str) -> float:
        if call.timeout_sec is not None:
            return call.timeout_sec
        return self._timeouts.get(target, self._default_timeout_sec)

    def _alternates(self, call: _Call) -> list[str]:
        candidates = [
            pid for pid in self._service.participants()
            if pid != call.participant_id
            and pid not in call.exclude
            and self._state.breaker(pid).can_proceed()
        ]
        return sorted(
            candidates,
            key=lambda pid: (
                _CLASS_RANK[self._state.health(pid).classification()],
                -self._state.health(pid).success_rate,
                pid,
            ),
        )

    def _backoff_delay(self, attempt: int) -> float:
        delay = self._config.base_delay_sec * (self._config.backoff_multiplier ** attempt)
        return min(delay, self._config.max_delay_sec) + self._rng.uniform(0, self._config.jitter_sec)

    def _rate_limit_delay(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            return retry_after
        ladder = self._config.rate_limit_delays_sec or [self._config.base_delay_sec]
        return ladder[min(attempt, len(ladder) - 1)] + self._rng.uniform(0, self._config.jitter_sec)

    def _result(self, call: _Call, response: ModelResponse, fallback_used: str | None) -> InvocationResult:
        if fallback_used:
            logger.info("%s answered via %s (%s)", call.participant_id, response.provider, fallback_used)
        return InvocationResult(
            participant_id=call.participant_id,
            served_by=response.provider,
            text=response.content,
            tokens_used=response.token_count or 0,
            cost=response.cost,
            latency_sec=response.latency_sec,
            attempts=call.attempts,
            fallback_used=fallback_used,
        )
