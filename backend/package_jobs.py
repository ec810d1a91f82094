"""Scheduler integration for package expiry, renewal reminders and reconciliation."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional

from backend.app.packages import Discrepancy, DiscrepancyKind, ReminderDispatchSummary
from backend.app.services.packages import (
    get_ledger_config,
    get_reconciliation_engine,
    get_renewal_scheduler,
    get_subscription_ledger,
)

logger = logging.getLogger(__name__)

EXPIRY_JOB = "expiry"
REMINDER_JOB = "renewal_reminders"
RECONCILIATION_JOB = "reconciliation"

_scheduler_lock = Lock()
_workers: Dict[str, "_JobWorker"] = {}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "items_processed": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_JOB_METRICS: Dict[str, Dict[str, object]] = {
    EXPIRY_JOB: _empty_metrics(),
    REMINDER_JOB: _empty_metrics(),
    RECONCILIATION_JOB: _empty_metrics(),
}
_metrics_lock = Lock()


def _record_run_start(job: str, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(job: str, completed_at: datetime, items: int, failures: int = 0) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["items_processed"] = int(metrics.get("items_processed", 0)) + items
        metrics["failures"] = int(metrics.get("failures", 0)) + failures
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(job: str, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def _normalise(now: Optional[datetime]) -> datetime:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)
    return current_time


def run_expiry_job(*, now: Optional[datetime] = None) -> int:
    current_time = _normalise(now)
    _record_run_start(EXPIRY_JOB, current_time)
    try:
        expired = get_subscription_ledger().expire_overdue(now=current_time)
    except Exception as exc:
        _record_run_failure(EXPIRY_JOB, exc)
        logger.exception("Package expiry job failed")
        raise
    _record_run_success(EXPIRY_JOB, current_time, expired)
    logger.info("Package expiry job completed", extra={"expired_count": expired})
    return expired


def run_reminder_job(*, now: Optional[datetime] = None) -> ReminderDispatchSummary:
    current_time = _normalise(now)
    _record_run_start(REMINDER_JOB, current_time)
    try:
        summary = get_renewal_scheduler().dispatch_reminders(now=current_time)
    except Exception as exc:
        _record_run_failure(REMINDER_JOB, exc)
        logger.exception("Renewal reminder job failed")
        raise
    _record_run_success(REMINDER_JOB, current_time, summary.reminders_sent, summary.failures)
    logger.info(
        "Renewal reminder job completed",
        extra={
            "reminders_sent": summary.reminders_sent,
            "skipped_duplicates": summary.skipped_duplicates,
            "failures": summary.failures,
        },
    )
    return summary


def run_reconciliation_job(*, now: Optional[datetime] = None) -> List[Discrepancy]:
    current_time = _normalise(now)
    _record_run_start(RECONCILIATION_JOB, current_time)
    try:
        findings = get_reconciliation_engine().run_reconciliation()
    except Exception as exc:
        _record_run_failure(RECONCILIATION_JOB, exc)
        logger.exception("Reconciliation job failed")
        raise
    problems = [finding for finding in findings if finding.kind != DiscrepancyKind.CLEAN]
    _record_run_success(RECONCILIATION_JOB, current_time, len(problems))
    logger.info(
        "Reconciliation job completed",
        extra={"discrepancies": dict(Counter(finding.kind.value for finding in problems))},
    )
    return findings


class _JobWorker(Thread):
    def __init__(self, job: str, target: Callable[[], object], *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name=f"package-job-{job}")
        self.job = job
        self._target_job = target
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
                self._target_job()
            except Exception:
                # Failures are logged and counted by the job; keep the schedule alive.
                logger.debug("Package job %s raised; waiting for next run", self.job)
            if self._stop_event.wait(self._interval):
                break


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current_time = _normalise(now)
    target = current_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current_time:
        target += timedelta(days=1)
    return max((target - current_time).total_seconds(), 0.0)


def start_package_jobs() -> None:
    config = get_ledger_config()
    if not config.jobs_enabled:
        logger.info("Package jobs disabled by configuration")
        return

    with _scheduler_lock:
        if _workers:
            return
        schedule = {
            EXPIRY_JOB: (run_expiry_job, config.expiry_sweep_hour),
            REMINDER_JOB: (run_reminder_job, config.reminder_hour),
            RECONCILIATION_JOB: (run_reconciliation_job, config.reconciliation_hour),
        }
        delays: Dict[str, float] = {}
        for job, (target, hour) in schedule.items():
            delays[job] = _seconds_until(hour)
            _workers[job] = _JobWorker(job, target, initial_delay=delays[job], interval=24 * 60 * 60)
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Package job scheduler started",
            extra={f"{job}_initial_delay_seconds": round(delay, 2) for job, delay in delays.items()},
        )


def shutdown_package_jobs() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Package job scheduler stopped")


def get_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _JOB_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(_empty_metrics())


__all__ = [
    "get_job_metrics",
    "run_expiry_job",
    "run_reconciliation_job",
    "run_reminder_job",
    "shutdown_package_jobs",
    "start_package_jobs",
]
