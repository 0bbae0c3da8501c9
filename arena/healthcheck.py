"""Participant health checks: ping each participant before a battle starts."""

import asyncio
import logging

from arena.providers.base import TextGenerationService

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_PING_MAX_TOKENS = 8
_TIMEOUT_SEC = 15.0


async def _check_one(
    service: TextGenerationService, participant_id: str, timeout_sec: float
) -> tuple[str, bool, str]:
    """Ping a single participant. Returns (participant_id, ok, error_message)."""
    try:
        await asyncio.wait_for(
            service.invoke(participant_id, _PING_PROMPT, _PING_MAX_TOKENS, 0.0, timeout_sec),
            timeout=timeout_sec,
        )
        return participant_id, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", participant_id, exc)
        return participant_id, False, str(exc) or type(exc).__name__


async def run_health_checks(
    service: TextGenerationService,
    timeout_sec: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping every participant the service routes to, in parallel.

    Returns:
        Dict mapping participant id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(
        *(_check_one(service, pid, timeout_sec) for pid in service.participants())
    )
    return {pid: (ok, err) for pid, ok, err in results}
