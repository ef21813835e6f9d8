"""
Bounded retry with a fixed inter-attempt delay and per-attempt timeouts.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from overseer.errors import AttemptTimeoutError, Outcome
from overseer.logs import get_logger

if TYPE_CHECKING:
    from overseer.registry import JobCapability

UTC = timezone.utc
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_DELAY_SECONDS = 30.0
CANCEL_GRACE_SECONDS = 5.0
STOP_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    attempt_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be > 0")


@dataclass(frozen=True)
class ExecutionAttempt:
    attempt_number: int
    started_at: datetime
    outcome: Outcome
    duration_bound: Optional[float]
    duration_seconds: float


@dataclass(frozen=True)
class RetryResult:
    job_name: str
    outcome: Outcome
    attempts: List[ExecutionAttempt] = field(default_factory=list)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    @property
    def success(self) -> bool:
        return self.outcome.success

    @property
    def exhausted(self) -> bool:
        return not self.outcome.success and len(self.attempts) >= self.max_attempts


def _await_exit(worker: threading.Thread, label: str, logger: Optional[logging.Logger]) -> None:
    worker.join(CANCEL_GRACE_SECONDS)
    if worker.is_alive():
        get_logger(logger).warning(
            "[%s] Still running %gs after cancel; waiting for it to exit",
            label,
            CANCEL_GRACE_SECONDS,
        )
        worker.join()


def call_with_timeout(
    func: Callable[[], Any],
    timeout: Optional[float],
    label: str = "call",
    cancel: Optional[threading.Event] = None,
    stop: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """Run ``func`` and return its result, giving up after ``timeout`` seconds.

    The call runs on a worker thread. On timeout ``cancel`` is set, the worker
    is joined until ``func`` returns, and AttemptTimeoutError is raised, so the
    call never outlives this function. ``cancel`` is also set as soon as
    ``stop`` is. Exceptions raised by ``func`` propagate to the caller.
    ``timeout=None`` calls ``func`` inline.
    """
    if timeout is None:
        return func()

    box: dict = {}

    def target() -> None:
        try:
            box["value"] = func()
        except BaseException as exc:  # re-raised on the calling thread
            box["error"] = exc

    worker = threading.Thread(target=target, daemon=True, name=f"overseer-{label}")
    worker.start()
    deadline = time.monotonic() + timeout
    while worker.is_alive():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        worker.join(min(remaining, STOP_POLL_SECONDS) if stop is not None else remaining)
        if stop is not None and stop.is_set() and cancel is not None:
            cancel.set()
    if worker.is_alive():
        if cancel is not None:
            cancel.set()
        _await_exit(worker, label, logger)
        raise AttemptTimeoutError(label, timeout)
    if "error" in box:
        raise box["error"]
    return box.get("value")


def _execute_attempt(
    job: "JobCapability",
    timeout: Optional[float],
    label: str,
    stop: Optional[threading.Event],
    logger: Optional[logging.Logger],
) -> Outcome:
    cancel = stop if timeout is None else threading.Event()
    try:
        result = call_with_timeout(
            lambda: job.execute(cancel),
            timeout,
            label,
            cancel=cancel,
            stop=stop,
            logger=logger,
        )
    except AttemptTimeoutError as exc:
        return Outcome.failed(str(exc))
    except Exception as exc:
        return Outcome.from_exception(exc)
    if isinstance(result, Outcome):
        return result
    if result is None or result is True:
        return Outcome.ok()
    return Outcome.failed(f"execute() returned {result!r}")


def run_with_retry(
    job: "JobCapability",
    policy: RetryPolicy,
    job_name: str = "job",
    logger: Optional[logging.Logger] = None,
    sleep: Optional[Callable[[float], Any]] = None,
    cancel: Optional[threading.Event] = None,
) -> RetryResult:
    """Run ``job.execute()`` up to ``policy.max_attempts`` times.

    A raised exception or a timeout counts as a failed attempt. A timed-out
    attempt is cancelled and waited for, so attempts never overlap. Between failed
    attempts the policy waits ``policy.delay_seconds``; the wait returns early
    and the run stops when ``cancel`` is set. ``sleep`` replaces the wait
    (tests use it to record delays).
    """
    log = get_logger(logger)
    attempts: List[ExecutionAttempt] = []
    outcome = Outcome.failed("not attempted")

    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None and cancel.is_set():
            outcome = Outcome.failed("cancelled")
            log.warning("[%s] Cancelled before attempt %s/%s", job_name, attempt, policy.max_attempts)
            break

        log.info("[%s] Attempt %s/%s started", job_name, attempt, policy.max_attempts)
        started = datetime.now(tz=UTC)
        clock = time.monotonic()
        outcome = _execute_attempt(job, policy.attempt_timeout, f"{job_name}#{attempt}", cancel, log)
        attempts.append(
            ExecutionAttempt(
                attempt_number=attempt,
                started_at=started,
                outcome=outcome,
                duration_bound=policy.attempt_timeout,
                duration_seconds=time.monotonic() - clock,
            )
        )

        if outcome.success:
            log.info(
                "[%s] Succeeded on attempt %s/%s (%.2fs)",
                job_name,
                attempt,
                policy.max_attempts,
                attempts[-1].duration_seconds,
            )
            break

        log.warning(
            "[%s] Attempt %s/%s failed: %s",
            job_name,
            attempt,
            policy.max_attempts,
            outcome.reason,
        )
        if attempt == policy.max_attempts:
            log.error(
                "[%s] All %s attempt(s) failed; last reason: %s",
                job_name,
                policy.max_attempts,
                outcome.reason,
            )
            break

        log.info("[%s] Waiting %gs before retry", job_name, policy.delay_seconds)
        if sleep is not None:
            sleep(policy.delay_seconds)
        elif cancel is not None:
            cancel.wait(policy.delay_seconds)
        else:
            time.sleep(policy.delay_seconds)

    return RetryResult(
        job_name=job_name,
        outcome=outcome,
        attempts=attempts,
        max_attempts=policy.max_attempts,
    )
