from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from orgbilling import billing_jobs
from orgbilling.app.renewals import RenewalAction, RenewalResult, RenewalRunSummary, TrialRunSummary
from orgbilling.billing_jobs import RenewalJobRunner


class FakeScheduler:
    def __init__(self, summary: RenewalRunSummary) -> None:
        self.summary = summary
        self.calls = []
        self.on_run = None
        self.error = None

    def run(self, now=None):
        self.calls.append(now)
        if self.on_run is not None:
            self.on_run()
        if self.error is not None:
            raise self.error
        return self.summary


class FakeTrialJob:
    def run(self, now=None):
        return TrialRunSummary(started_at=now, processed=4, notified=2, expired=1, errors=1)


@pytest.fixture
def runner_components():
    run_time = datetime(2025, 3, 10, 2, tzinfo=timezone.utc)
    summary = RenewalRunSummary(
        started_at=run_time,
        results=[
            RenewalResult("sub_1", True, RenewalAction.INVOICE_CREATED, "created"),
            RenewalResult("sub_2", False, RenewalAction.GRACE_EXTENDED, "gateway down", error="timeout"),
        ],
    )
    scheduler = FakeScheduler(summary)
    engine = SimpleNamespace(scheduler=scheduler, trials=FakeTrialJob())
    runner = RenewalJobRunner(lambda: engine)
    return run_time, summary, scheduler, runner


def test_run_renewal_job_updates_metrics(runner_components):
    run_time, summary, scheduler, runner = runner_components

    result = runner.run_renewal_job(now=run_time)

    assert result is summary
    assert scheduler.calls == [run_time]
    metrics = runner.get_metrics()["renewals"]
    assert metrics["runs"] == 1
    assert metrics["processed"] == 2
    assert metrics["failures"] == 1
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] is None


def test_overlapping_renewal_run_is_skipped(runner_components):
    run_time, _, scheduler, runner = runner_components
    nested = []
    scheduler.on_run = lambda: nested.append(runner.run_renewal_job(now=run_time))

    runner.run_renewal_job(now=run_time)

    assert nested == [None]
    assert len(scheduler.calls) == 1
    assert runner.get_metrics()["renewals"]["skipped_runs"] == 1


def test_failed_renewal_run_is_recorded_and_raised(runner_components):
    run_time, _, scheduler, runner = runner_components
    scheduler.error = RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        runner.run_renewal_job(now=run_time)

    metrics = runner.get_metrics()["renewals"]
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_success_at"] is None

    scheduler.error = None
    assert runner.run_renewal_job(now=run_time) is not None


def test_run_trial_job_updates_metrics(runner_components):
    run_time, _, _, runner = runner_components

    summary = runner.run_trial_job(now=run_time)

    assert summary.expired == 1
    metrics = runner.get_metrics()["trials"]
    assert metrics["processed"] == 4
    assert metrics["failures"] == 1


def test_seconds_until_next_run():
    current = datetime(2025, 3, 10, 1, 30, tzinfo=timezone.utc)

    assert billing_jobs._seconds_until(2, now=current) == 30 * 60
    assert billing_jobs._seconds_until(1, now=current) == 23.5 * 60 * 60


def test_start_and_shutdown_are_idempotent(runner_components):
    _, _, _, runner = runner_components

    runner.start()
    runner.start()
    assert runner.running is True

    runner.shutdown()
    assert runner.running is False
