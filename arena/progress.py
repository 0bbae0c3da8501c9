"""Progress reporting hooks. Reports are fire-and-forget and never affect a battle."""

import logging
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def report(self, phase: str, percent: float, message: str) -> None:
        ...


class NullProgress:
    def report(self, phase: str, percent: float, message: str) -> None:
        pass


class CallbackProgress:
    """Adapts a plain callable to the ProgressSink protocol."""

    def __init__(self, callback: Callable[[str, float, str], None]) -> None:
        self._callback = callback

    def report(self, phase: str, percent: float, message: str) -> None:
        self._callback(phase, percent, message)


def safe_report(sink: ProgressSink | None, phase: str, percent: float, message: str) -> None:
    """Forward to the sink, logging and discarding any error it raises."""
    if sink is None:
        return
    try:
        sink.report(phase, max(0.0, min(100.0, percent)), message)
    except Exception as exc:
        logger.warning("Progress sink failed during %s: %s", phase, exc)
