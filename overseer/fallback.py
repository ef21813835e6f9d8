"""
Fallback sequencer: alternative strategies for one logical step, tried in order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from overseer.errors import Outcome
from overseer.logs import get_logger


@dataclass(frozen=True)
class Strategy:
    name: str
    action: Callable[[], Outcome]


@dataclass(frozen=True)
class FallbackResult:
    outcome: Outcome
    strategy: Optional[str] = None
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome.success

    @property
    def attempted(self) -> int:
        return len(self.failures) + (1 if self.outcome.success else 0)


def _run_strategy(strategy: Strategy) -> Outcome:
    try:
        result = strategy.action()
    except Exception as exc:
        return Outcome.from_exception(exc)
    if isinstance(result, Outcome):
        return result
    return Outcome.ok() if result else Outcome.failed(f"strategy returned {result!r}")


def try_in_order(
    strategies: Sequence[Strategy],
    logger: Optional[logging.Logger] = None,
    label: str = "step",
) -> FallbackResult:
    """Try each strategy once, in order, stopping at the first success.

    A strategy that raises counts as that strategy's failure. When every
    strategy fails the result carries the last strategy's reason.
    """
    log = get_logger(logger)
    if not strategies:
        log.error("[%s] No fallback strategies configured", label)
        return FallbackResult(outcome=Outcome.failed("no strategies configured"))

    failures: List[Tuple[str, str]] = []
    for idx, strategy in enumerate(strategies, start=1):
        outcome = _run_strategy(strategy)
        if outcome.success:
            log.info("[%s] Strategy %s/%s succeeded: %s", label, idx, len(strategies), strategy.name)
            return FallbackResult(outcome=outcome, strategy=strategy.name, failures=failures)
        reason = outcome.reason or "unknown failure"
        failures.append((strategy.name, reason))
        log.warning("[%s] Strategy %s/%s failed: %s (%s)", label, idx, len(strategies), strategy.name, reason)

    last_name, last_reason = failures[-1]
    log.warning("[%s] All %s strategies failed; last was %s", label, len(strategies), last_name)
    return FallbackResult(outcome=Outcome.failed(last_reason), failures=failures)
