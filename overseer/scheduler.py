"""
Scheduler core: arms one trigger per registered job, dispatches due jobs on
worker threads and re-arms them without waiting for the run to finish.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from overseer.errors import JobNotFoundError, OverseerError, Outcome
from overseer.logs import get_logger
from overseer.registry import RegisteredJob
from overseer.retry import RetryResult, run_with_retry
from overseer.triggers import ensure_aware_utc, next_fire_time

UTC = timezone.utc
DEFAULT_POLL_SECONDS = 1.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 10.0


class TriggerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRING = "firing"


@dataclass
class ScheduledTrigger:
    registered: RegisteredJob
    cron_expr: str
    next_fire: Optional[datetime] = None
    state: TriggerState = TriggerState.IDLE
    running_count: int = 0
    queued_pending: bool = False
    last_fired: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.registered.name

    @property
    def overlap(self) -> str:
        return self.registered.definition.overlap


Launcher = Callable[[ScheduledTrigger, datetime], None]


class Scheduler:
    def __init__(
        self,
        jobs: Sequence[RegisteredJob],
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        launcher: Optional[Launcher] = None,
        retry_sleep: Optional[Callable[[float], object]] = None,
    ):
        self.logger = get_logger(logger)
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._launcher = launcher or self._launch_thread
        self._retry_sleep = retry_sleep
        self._triggers: Dict[str, ScheduledTrigger] = {}
        for registered in jobs:
            if registered.name in self._triggers:
                raise OverseerError(f'Job "{registered.name}" registered twice.')
            self._triggers[registered.name] = ScheduledTrigger(
                registered=registered,
                cron_expr=registered.definition.schedule,
            )
        self._completions: "Queue[Tuple[str, RetryResult]]" = Queue()
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()

    @property
    def triggers(self) -> List[ScheduledTrigger]:
        return list(self._triggers.values())

    def trigger(self, name: str) -> ScheduledTrigger:
        try:
            return self._triggers[name]
        except KeyError:
            raise JobNotFoundError(name) from None

    def arm(self, now: Optional[datetime] = None) -> None:
        now = ensure_aware_utc(now or self._clock())
        for trigger in self._triggers.values():
            self._advance(trigger, now)

    def _advance(self, trigger: ScheduledTrigger, now: datetime) -> None:
        definition = trigger.registered.definition
        try:
            trigger.next_fire = next_fire_time(trigger.cron_expr, now, definition.timezone)
        except OverseerError as exc:
            trigger.next_fire = None
            trigger.state = TriggerState.IDLE
            self.logger.error("[%s] Unable to compute next fire time: %s", trigger.name, exc)
            return
        trigger.state = TriggerState.ARMED
        self.logger.info(
            "[%s] Next scheduled run: %s (%s)",
            trigger.name,
            trigger.next_fire.astimezone(definition.timezone).isoformat(),
            definition.timezone_name,
        )

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Evaluate every trigger once; return the names dispatched in this pass."""
        now = ensure_aware_utc(now or self._clock())
        dispatched = self.drain_completions(now)

        for trigger in self._triggers.values():
            if trigger.state != TriggerState.ARMED or trigger.next_fire is None:
                continue
            if trigger.next_fire > now:
                continue
            scheduled_for = trigger.next_fire
            trigger.state = TriggerState.FIRING
            trigger.last_fired = scheduled_for
            if self._admit(trigger, scheduled_for):
                self._dispatch(trigger, scheduled_for)
                dispatched.append(trigger.name)
            self._advance(trigger, now)
        return dispatched

    def _admit(self, trigger: ScheduledTrigger, scheduled_for: datetime) -> bool:
        if trigger.running_count == 0 or trigger.overlap == "parallel":
            return True
        if trigger.overlap == "queue":
            if not trigger.queued_pending:
                trigger.queued_pending = True
                self.logger.info("[%s] Queueing one pending run", trigger.name)
            return False
        self.logger.info(
            "[%s] Skipping overlapping run at %s (running=%s)",
            trigger.name,
            scheduled_for.isoformat(),
            trigger.running_count,
        )
        return False

    def _dispatch(self, trigger: ScheduledTrigger, scheduled_for: datetime) -> None:
        trigger.running_count += 1
        self.logger.info(
            "[%s] Dispatching (overlap=%s, running=%s, scheduled_for=%s)",
            trigger.name,
            trigger.overlap,
            trigger.running_count,
            scheduled_for.isoformat(),
        )
        self._launcher(trigger, scheduled_for)

    def _launch_thread(self, trigger: ScheduledTrigger, scheduled_for: datetime) -> None:
        thread = threading.Thread(
            target=self._worker,
            args=(trigger.registered,),
            daemon=True,
            name=f"overseer-{trigger.name}",
        )
        with self._threads_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def _worker(self, registered: RegisteredJob) -> None:
        result = self.execute(registered)
        self.record_completion(registered.name, result)

    def execute(self, registered: RegisteredJob) -> RetryResult:
        policy = registered.definition.retry
        try:
            return run_with_retry(
                registered.job,
                policy,
                job_name=registered.name,
                logger=self.logger,
                sleep=self._retry_sleep,
                cancel=self._cancel_event,
            )
        except Exception as exc:  # pragma: no cover - defensive
            self.logger.exception("[%s] Unexpected error while running job: %s", registered.name, exc)
            return RetryResult(
                job_name=registered.name,
                outcome=Outcome.from_exception(exc),
                max_attempts=policy.max_attempts,
            )

    def record_completion(self, name: str, result: RetryResult) -> None:
        self._completions.put((name, result))

    def drain_completions(self, now: Optional[datetime] = None) -> List[str]:
        """Apply finished runs to trigger bookkeeping; return queued runs dispatched."""
        now = ensure_aware_utc(now or self._clock())
        dispatched: List[str] = []
        while True:
            try:
                name, result = self._completions.get_nowait()
            except Empty:
                break
            trigger = self._triggers.get(name)
            if trigger is None:
                continue
            trigger.running_count = max(trigger.running_count - 1, 0)
            log = self.logger.info if result.success else self.logger.error
            log(
                "[%s] Finished with success=%s after %s attempt(s); running=%s",
                name,
                result.success,
                len(result.attempts),
                trigger.running_count,
            )
            if trigger.running_count == 0 and trigger.queued_pending and not self._stop_event.is_set():
                trigger.queued_pending = False
                self.logger.info("[%s] Dispatching queued pending run", name)
                self._dispatch(trigger, now)
                dispatched.append(name)
        return dispatched

    def run_once(self, name: Optional[str] = None) -> List[RetryResult]:
        """Run one job (or every job) now, on the calling thread."""
        selected = [self.trigger(name)] if name else self.triggers
        return [self.execute(trigger.registered) for trigger in selected]

    def _seconds_until_next(self, now: datetime, poll_seconds: float) -> float:
        upcoming = [t.next_fire for t in self._triggers.values() if t.state == TriggerState.ARMED and t.next_fire]
        if not upcoming:
            return poll_seconds
        return max(0.0, min(poll_seconds, (min(upcoming) - now).total_seconds()))

    def run_forever(self, poll_seconds: float = DEFAULT_POLL_SECONDS) -> None:
        self.logger.info(
            "Starting scheduler with %s job(s), poll_seconds=%s",
            len(self._triggers),
            poll_seconds,
        )
        self.arm()
        while not self._stop_event.is_set():
            self.tick()
            now = ensure_aware_utc(self._clock())
            self._stop_event.wait(self._seconds_until_next(now, poll_seconds))
        self.logger.info("Scheduler loop stopped.")

    def stop(self) -> None:
        self._stop_event.set()

    def shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS) -> bool:
        """Stop the loop, cancel retry waits and join running jobs; True if all finished."""
        self._stop_event.set()
        self._cancel_event.set()
        deadline = time.monotonic() + timeout
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        pending = [thread.name for thread in threads if thread.is_alive()]
        if pending:
            self.logger.warning("Shutdown timed out; still running: %s", ", ".join(pending))
        self.drain_completions()
        return not pending
