from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from overseer.config import JobDefinition
from overseer.errors import Outcome
from overseer.registry import JobCapability, RegisteredJob
from overseer.retry import RetryPolicy, RetryResult
from overseer.scheduler import Scheduler, ScheduledTrigger, TriggerState

UTC = timezone.utc
START = datetime(2026, 1, 1, 0, 0, tzinfo=UTC)


class EventJob(JobCapability):
    def __init__(self, outcome: Outcome = Outcome.ok(), block: bool = False):
        self.outcome = outcome
        self.started = threading.Event()
        self.release = threading.Event()
        self.block = block
        self.calls = 0

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        self.calls += 1
        self.started.set()
        if self.block:
            self.release.wait(10)
        return self.outcome


class RaisingJob(JobCapability):
    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        raise RuntimeError("job crashed")


def _registered(
    name: str,
    job: JobCapability,
    schedule: str = "*/5 * * * *",
    overlap: str = "skip",
    retry: RetryPolicy = RetryPolicy(),
) -> RegisteredJob:
    definition = JobDefinition(name=name, schedule=schedule, overlap=overlap, retry=retry)
    return RegisteredJob(definition=definition, job=job)


class RecordingLauncher:
    def __init__(self) -> None:
        self.launched: List[Tuple[str, datetime]] = []

    def __call__(self, trigger: ScheduledTrigger, scheduled_for: datetime) -> None:
        self.launched.append((trigger.name, scheduled_for))


def _ok(name: str) -> RetryResult:
    return RetryResult(job_name=name, outcome=Outcome.ok())


def test_arm_computes_first_fire_time() -> None:
    scheduler = Scheduler([_registered("a", EventJob())], launcher=RecordingLauncher())
    scheduler.arm(START)
    trigger = scheduler.trigger("a")
    assert trigger.state == TriggerState.ARMED
    assert trigger.next_fire == START + timedelta(minutes=5)


def test_due_trigger_dispatches_once_and_rearms_after_now() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob())], launcher=launcher)
    scheduler.arm(START)

    assert scheduler.tick(START + timedelta(minutes=4)) == []
    now = START + timedelta(minutes=5, seconds=3)
    assert scheduler.tick(now) == ["a"]
    assert launcher.launched == [("a", START + timedelta(minutes=5))]
    trigger = scheduler.trigger("a")
    assert trigger.state == TriggerState.ARMED
    assert trigger.next_fire == START + timedelta(minutes=10)
    assert trigger.next_fire > now
    assert scheduler.tick(now) == []


def test_missed_windows_fire_once() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob(), overlap="parallel")], launcher=launcher)
    scheduler.arm(START)
    late = START + timedelta(hours=3, minutes=2)
    assert scheduler.tick(late) == ["a"]
    assert len(launcher.launched) == 1
    assert scheduler.trigger("a").next_fire == START + timedelta(hours=3, minutes=5)


def test_fire_times_are_monotonic() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob(), overlap="parallel")], launcher=launcher)
    scheduler.arm(START)
    now = START
    previous = START
    for _ in range(6):
        now += timedelta(minutes=7)
        scheduler.tick(now)
        assert scheduler.trigger("a").next_fire > now
    fired = [at for _, at in launcher.launched]
    for at in fired:
        assert at > previous
        previous = at


def test_simultaneous_jobs_dispatch_without_blocking_each_other() -> None:
    slow = EventJob(block=True)
    quick = EventJob()
    scheduler = Scheduler([_registered("slow", slow), _registered("quick", quick)])
    scheduler.arm(START)
    try:
        dispatched = scheduler.tick(START + timedelta(minutes=5))
        assert dispatched == ["slow", "quick"]
        assert slow.started.wait(5)
        assert quick.started.wait(5)
        assert not slow.release.is_set()
        assert scheduler.trigger("slow").running_count == 1
    finally:
        slow.release.set()
        assert scheduler.shutdown(timeout=5)
    assert scheduler.trigger("slow").running_count == 0
    assert scheduler.trigger("quick").running_count == 0


def test_skip_overlap_drops_trigger_while_running() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob(), overlap="skip")], launcher=launcher)
    scheduler.arm(START)
    scheduler.tick(START + timedelta(minutes=5))
    assert scheduler.tick(START + timedelta(minutes=10)) == []
    assert len(launcher.launched) == 1
    assert scheduler.trigger("a").next_fire == START + timedelta(minutes=15)

    scheduler.record_completion("a", _ok("a"))
    assert scheduler.tick(START + timedelta(minutes=15)) == ["a"]
    assert len(launcher.launched) == 2


def test_queue_overlap_runs_one_pending_after_completion() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob(), overlap="queue")], launcher=launcher)
    scheduler.arm(START)
    scheduler.tick(START + timedelta(minutes=5))
    scheduler.tick(START + timedelta(minutes=10))
    scheduler.tick(START + timedelta(minutes=15))
    trigger = scheduler.trigger("a")
    assert trigger.queued_pending is True
    assert len(launcher.launched) == 1

    scheduler.record_completion("a", _ok("a"))
    assert scheduler.tick(START + timedelta(minutes=16)) == ["a"]
    assert trigger.queued_pending is False
    assert trigger.running_count == 1
    assert len(launcher.launched) == 2


def test_parallel_overlap_allows_concurrent_runs() -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler([_registered("a", EventJob(), overlap="parallel")], launcher=launcher)
    scheduler.arm(START)
    scheduler.tick(START + timedelta(minutes=5))
    assert scheduler.tick(START + timedelta(minutes=10)) == ["a"]
    assert scheduler.trigger("a").running_count == 2


def test_failing_job_does_not_affect_other_triggers() -> None:
    good = EventJob()
    scheduler = Scheduler(
        [
            _registered("crash", RaisingJob(), retry=RetryPolicy(max_attempts=2, delay_seconds=0)),
            _registered("good", good),
        ]
    )
    scheduler.arm(START)
    try:
        assert scheduler.tick(START + timedelta(minutes=5)) == ["crash", "good"]
        assert good.started.wait(5)
    finally:
        assert scheduler.shutdown(timeout=5)
    for name in ("crash", "good"):
        trigger = scheduler.trigger(name)
        assert trigger.state == TriggerState.ARMED
        assert trigger.next_fire == START + timedelta(minutes=10)
        assert trigger.running_count == 0


def test_run_once_runs_through_retry_policy() -> None:
    flaky_calls: List[int] = []

    class Flaky(JobCapability):
        def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
            flaky_calls.append(1)
            return Outcome.ok() if len(flaky_calls) == 2 else Outcome.failed("not yet")

    scheduler = Scheduler(
        [_registered("flaky", Flaky(), retry=RetryPolicy(max_attempts=3, delay_seconds=30))],
        retry_sleep=lambda _: None,
    )
    results = scheduler.run_once("flaky")
    assert len(results) == 1
    assert results[0].success is True
    assert len(results[0].attempts) == 2


def test_shutdown_cancels_retry_delay() -> None:
    job = EventJob(outcome=Outcome.failed("down"))
    scheduler = Scheduler([_registered("a", job, retry=RetryPolicy(max_attempts=3, delay_seconds=60))])
    scheduler.arm(START)
    scheduler.tick(START + timedelta(minutes=5))
    assert job.started.wait(5)
    started = time.monotonic()
    assert scheduler.shutdown(timeout=5)
    assert time.monotonic() - started < 5
    assert job.calls == 1


def test_run_forever_fires_real_schedule_until_stopped() -> None:
    job = EventJob()
    scheduler = Scheduler([_registered("every-second", job, schedule="* * * * * *")])
    loop = threading.Thread(target=scheduler.run_forever, kwargs={"poll_seconds": 0.2}, daemon=True)
    loop.start()
    try:
        assert job.started.wait(5)
    finally:
        scheduler.stop()
        loop.join(5)
        scheduler.shutdown(timeout=5)
    assert not loop.is_alive()
    assert job.calls >= 1


class SlowJob(JobCapability):
    """Ignores cancellation and runs for a fixed time."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.started = threading.Event()
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            time.sleep(self.seconds)
        finally:
            with self.lock:
                self.active -= 1
        return Outcome.ok()


def test_timed_out_run_keeps_blocking_skip_overlap_until_it_exits() -> None:
    job = SlowJob(seconds=0.8)
    scheduler = Scheduler(
        [_registered("a", job, overlap="skip", retry=RetryPolicy(max_attempts=1, attempt_timeout=0.1))]
    )
    scheduler.arm(START)
    try:
        assert scheduler.tick(START + timedelta(minutes=5)) == ["a"]
        assert job.started.wait(5)
        time.sleep(0.3)
        assert scheduler.tick(START + timedelta(minutes=10)) == []
        assert scheduler.trigger("a").running_count == 1
    finally:
        assert scheduler.shutdown(timeout=5)
    assert job.peak == 1
    assert scheduler.trigger("a").running_count == 0


class CancellableJob(JobCapability):
    def __init__(self) -> None:
        self.started = threading.Event()
        self.saw_cancel = False

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        self.started.set()
        assert cancel is not None
        self.saw_cancel = cancel.wait(10)
        return Outcome.failed("cancelled")


@pytest.mark.parametrize("attempt_timeout", [None, 60.0])
def test_shutdown_cancels_running_job(attempt_timeout: Optional[float]) -> None:
    job = CancellableJob()
    scheduler = Scheduler(
        [_registered("a", job, retry=RetryPolicy(max_attempts=1, attempt_timeout=attempt_timeout))]
    )
    scheduler.arm(START)
    scheduler.tick(START + timedelta(minutes=5))
    assert job.started.wait(5)
    started = time.monotonic()
    assert scheduler.shutdown(timeout=5)
    assert time.monotonic() - started < 5
    assert job.saw_cancel is True
