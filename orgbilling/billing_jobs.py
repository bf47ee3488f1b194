"""Background scheduling for the daily renewal and trial sweeps."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from orgbilling.app.renewals.scheduler import RenewalRunSummary
from orgbilling.app.renewals.trials import TrialRunSummary
from orgbilling.app.services.billing import BillingEngine, get_billing_engine

logger = logging.getLogger(__name__)

RENEWAL_JOB = "renewals"
TRIAL_JOB = "trials"


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "skipped_runs": 0,
        "processed": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current = now or datetime.now(timezone.utc)
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


class _JobWorker(Thread):
    def __init__(self, name: str, job: Callable[[], object], *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name=f"billing-{name}")
        self.job_name = name
        self._job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self._job()
            except Exception:
                # Logged and counted by the job; keep the schedule going.
                pass
            if self._stop_event.wait(self._interval):
                break


class RenewalJobRunner:
    """Runs the renewal and trial sweeps, once a day or on demand.

    A sweep never overlaps with itself: a second call while one is running is
    skipped and logged. Run metrics are kept per job.
    """

    def __init__(
        self,
        engine_provider: Callable[[], BillingEngine],
        *,
        renewal_hour: int = 2,
        trial_hour: int = 3,
    ) -> None:
        self._engine_provider = engine_provider
        self.renewal_hour = renewal_hour
        self.trial_hour = trial_hour
        self._job_locks = {RENEWAL_JOB: Lock(), TRIAL_JOB: Lock()}
        self._metrics: Dict[str, Dict[str, object]] = {
            RENEWAL_JOB: _empty_metrics(),
            TRIAL_JOB: _empty_metrics(),
        }
        self._metrics_lock = Lock()
        self._scheduler_lock = Lock()
        self._workers: Dict[str, _JobWorker] = {}

    def _record_start(self, job: str, started_at: datetime) -> None:
        with self._metrics_lock:
            metrics = self._metrics[job]
            metrics["runs"] = int(metrics["runs"]) + 1
            metrics["last_run_at"] = started_at

    def _record_skip(self, job: str) -> None:
        with self._metrics_lock:
            metrics = self._metrics[job]
            metrics["skipped_runs"] = int(metrics["skipped_runs"]) + 1

    def _record_success(self, job: str, completed_at: datetime, processed: int, failures: int) -> None:
        with self._metrics_lock:
            metrics = self._metrics[job]
            metrics["processed"] = int(metrics["processed"]) + processed
            metrics["failures"] = int(metrics["failures"]) + failures
            metrics["last_success_at"] = completed_at
            metrics["last_error"] = None

    def _record_failure(self, job: str, error: Exception) -> None:
        with self._metrics_lock:
            metrics = self._metrics[job]
            metrics["failures"] = int(metrics["failures"]) + 1
            metrics["last_error"] = f"{type(error).__name__}: {error}"

    def run_renewal_job(self, *, now: Optional[datetime] = None) -> Optional[RenewalRunSummary]:
        """Run one renewal sweep; returns ``None`` when a sweep is already running."""

        lock = self._job_locks[RENEWAL_JOB]
        if not lock.acquire(blocking=False):
            self._record_skip(RENEWAL_JOB)
            logger.warning("Previous renewal job still running, skipping")
            return None
        try:
            current_time = now or datetime.now(timezone.utc)
            if current_time.tzinfo is None:
                current_time = current_time.replace(tzinfo=timezone.utc)
            self._record_start(RENEWAL_JOB, current_time)
            try:
                summary = self._engine_provider().scheduler.run(current_time)
            except Exception as exc:
                self._record_failure(RENEWAL_JOB, exc)
                logger.exception("Subscription renewal job failed")
                raise
            self._record_success(RENEWAL_JOB, current_time, summary.processed, summary.failed)
            log = logger.warning if summary.failed else logger.info
            log(
                "Subscription renewal job completed",
                extra={
                    "processed": summary.processed,
                    "succeeded": summary.succeeded,
                    "failed": summary.failed,
                },
            )
            return summary
        finally:
            lock.release()

    def run_trial_job(self, *, now: Optional[datetime] = None) -> Optional[TrialRunSummary]:
        lock = self._job_locks[TRIAL_JOB]
        if not lock.acquire(blocking=False):
            self._record_skip(TRIAL_JOB)
            logger.warning("Previous trial expiry job still running, skipping")
            return None
        try:
            current_time = now or datetime.now(timezone.utc)
            self._record_start(TRIAL_JOB, current_time)
            try:
                summary = self._engine_provider().trials.run(current_time)
            except Exception as exc:
                self._record_failure(TRIAL_JOB, exc)
                logger.exception("Trial expiry job failed")
                raise
            self._record_success(TRIAL_JOB, current_time, summary.processed, summary.errors)
            logger.info(
                "Trial expiry job completed",
                extra={
                    "processed": summary.processed,
                    "expired": summary.expired,
                    "notified": summary.notified,
                    "errors": summary.errors,
                },
            )
            return summary
        finally:
            lock.release()

    def start(self) -> None:
        with self._scheduler_lock:
            if self._workers:
                return
            renewal_delay = _seconds_until(self.renewal_hour)
            trial_delay = _seconds_until(self.trial_hour)
            self._workers[RENEWAL_JOB] = _JobWorker(
                RENEWAL_JOB,
                self.run_renewal_job,
                initial_delay=renewal_delay,
                interval=24 * 60 * 60,
            )
            self._workers[TRIAL_JOB] = _JobWorker(
                TRIAL_JOB,
                self.run_trial_job,
                initial_delay=trial_delay,
                interval=24 * 60 * 60,
            )
            for worker in self._workers.values():
                worker.start()
            logger.info(
                "Billing job scheduler started",
                extra={
                    "renewal_initial_delay_seconds": round(renewal_delay, 2),
                    "trial_initial_delay_seconds": round(trial_delay, 2),
                },
            )

    def shutdown(self) -> None:
        with self._scheduler_lock:
            workers = list(self._workers.values())
            for worker in workers:
                worker.stop()
            for worker in workers:
                worker.join(timeout=1.0)
            self._workers.clear()
            logger.info("Billing job scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def get_metrics(self) -> Dict[str, Dict[str, object]]:
        with self._metrics_lock:
            snapshot: Dict[str, Dict[str, object]] = {}
            for key, value in self._metrics.items():
                snapshot[key] = {
                    **value,
                    "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                    "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
                }
            return snapshot


@lru_cache(maxsize=1)
def get_job_runner() -> RenewalJobRunner:
    config = get_billing_engine().config
    return RenewalJobRunner(
        get_billing_engine,
        renewal_hour=config.renewal_hour,
        trial_hour=config.trial_hour,
    )


__all__ = ["RenewalJobRunner", "get_job_runner"]
