import pytest

from async_push_service.backoff import BackoffScheduler, ScheduleOutcome
from async_push_service.models import NO_RETRY, PushJob, RetryHint

from tests.helpers import FakeLoop, silent_logger


def make_scheduler(**kwargs):
    loop = FakeLoop()
    return BackoffScheduler(loop=loop, logger=silent_logger(), **kwargs), loop


def test_retry_hint_schedules_decremented_job():
    scheduler, loop = make_scheduler()
    job = PushJob.multicast(["a", "b"], {"data": {"k": 1}}, attempt_budget=3)
    resubmitted = []

    outcome = scheduler.schedule(RetryHint.after(2), job, resubmitted.append)

    assert outcome is ScheduleOutcome.SCHEDULED
    assert loop.delays == [2.0]
    assert scheduler.pending == 1
    assert resubmitted == []

    loop.fire_all()

    assert scheduler.pending == 0
    assert len(resubmitted) == 1
    next_job = resubmitted[0]
    assert next_job.attempt_budget == 2
    assert next_job.attempt == 2
    assert next_job.recipients == ("a", "b")
    assert next_job.message == {"data": {"k": 1}}
    # The original job is untouched
    assert job.attempt_budget == 3


def test_no_retry_hint_abandons_regardless_of_budget():
    abandoned = []
    scheduler, loop = make_scheduler(on_abandoned=lambda job, reason: abandoned.append(reason))
    job = PushJob.multicast(["a"], {}, attempt_budget=5)

    outcome = scheduler.schedule(NO_RETRY, job, lambda j: None)

    assert outcome is ScheduleOutcome.ABANDONED
    assert loop.calls == []
    assert abandoned == ["no retry hint"]


def test_exhausted_budget_abandons():
    abandoned = []
    scheduler, loop = make_scheduler(on_abandoned=lambda job, reason: abandoned.append((job, reason)))
    job = PushJob.multicast(["a"], {}, attempt_budget=0)

    outcome = scheduler.schedule(RetryHint.after(1), job, lambda j: None)

    assert outcome is ScheduleOutcome.ABANDONED
    assert loop.calls == []
    assert abandoned == [(job, "attempt budget exhausted")]


def test_repeated_failures_stop_after_budget():
    scheduler, loop = make_scheduler()
    jobs = [PushJob.multicast(["a"], {}, attempt_budget=3)]
    outcomes = []

    def resubmit(next_job):
        jobs.append(next_job)

    while True:
        outcome = scheduler.schedule(RetryHint.after(2), jobs[-1], resubmit)
        outcomes.append(outcome)
        if outcome is ScheduleOutcome.ABANDONED:
            break
        loop.fire_all()

    assert outcomes == [ScheduleOutcome.SCHEDULED] * 3 + [ScheduleOutcome.ABANDONED]
    assert [job.attempt_budget for job in jobs] == [3, 2, 1, 0]
    assert [job.attempt for job in jobs] == [1, 2, 3, 4]


def test_abandonment_hook_failure_is_contained():
    def broken_hook(job, reason):
        raise RuntimeError("boom")

    scheduler, _ = make_scheduler(on_abandoned=broken_hook)

    outcome = scheduler.schedule(NO_RETRY, PushJob.multicast(["a"], {}, 1), lambda j: None)

    assert outcome is ScheduleOutcome.ABANDONED


def test_zero_second_hint_still_schedules():
    scheduler, loop = make_scheduler()

    outcome = scheduler.schedule(RetryHint.after(0), PushJob.multicast(["a"], {}, 1), lambda j: None)

    assert outcome is ScheduleOutcome.SCHEDULED
    assert loop.delays == [0.0]


@pytest.mark.asyncio
async def test_uses_running_loop_when_not_injected():
    import asyncio

    scheduler = BackoffScheduler(logger=silent_logger())
    fired = asyncio.Event()
    received = []

    def resubmit(job):
        received.append(job)
        fired.set()

    scheduler.schedule(RetryHint.after(0.01), PushJob.multicast(["a"], {}, 1), resubmit)
    await asyncio.wait_for(fired.wait(), timeout=2)

    assert received[0].attempt_budget == 0
    assert scheduler.pending == 0
