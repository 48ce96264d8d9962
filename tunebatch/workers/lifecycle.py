import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..models.cost import estimate_cost
from ..models.errors import InvalidStateError, PersistenceError, ValidationError
from ..models.job import (
    BatchJob, BatchJobItem, ExecutionConfig, ItemStatus, JobRunResult, JobStatus, utcnow,
)
from .progress import ProgressCallback, ProgressReporter
from .retry import ItemProcessor
from .scheduler import Scheduler
from .signals import RunSignals

logger = logging.getLogger(__name__)


class JobController:
    """Start, pause, resume and cancel batch jobs.

    State machine: pending -> running -> {paused, completed, failed} and
    paused -> {running, failed}. When the last in-flight item of a run settles
    after a pause there is nothing left to resume, so the run finishes the job
    straight from paused. Every transition is a conditional update in the
    store, so losing a race to another caller is reported the same way as an
    illegal transition. A run that loses its lease stops claiming items and
    leaves the job untouched.
    """

    def __init__(self, store, runner_id: str = None, lease_seconds: int = 60,
                 pause_poll_interval: float = 1.0, defaults: Optional[Dict[str, Any]] = None):
        self.store = store
        self.runner_id = runner_id or f"runner-{uuid.uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds
        self.pause_poll_interval = pause_poll_interval
        self.defaults = defaults or {}
        self._active: Dict[str, RunSignals] = {}

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def create_job(self, name: str, job_type: str, items: List[Any], config: Optional[Dict[str, Any]] = None,
                   estimated_cost: float = None):
        if not name or not name.strip():
            raise ValidationError("Job name is required")
        if not job_type or not job_type.strip():
            raise ValidationError("Job type is required")
        if not isinstance(items, list) or not items:
            raise ValidationError("A job needs at least one item")

        resolved = ExecutionConfig.merge(self.defaults, config)
        if estimated_cost is None:
            estimated_cost = estimate_cost(job_type, len(items)).estimated_cost

        return self.store.create_job(name, job_type, items, resolved.model_dump(), estimated_cost)

    async def start(self, job_id: str, processor: ItemProcessor, tuning_context: Any = None,
                    config_overrides: Optional[Dict[str, Any]] = None,
                    progress_callback: Optional[ProgressCallback] = None) -> JobRunResult:
        """Run every pending item of a pending job and settle the job"""
        job = self.store.get_job_record(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(job_id, "start", job.status)

        config = ExecutionConfig.merge(self.defaults, job.config, config_overrides)

        if not self.store.acquire_job(job_id, self.runner_id, self.lease_seconds):
            current = self.store.get_job_record(job_id)
            raise InvalidStateError(job_id, "start", current.status)

        signals = RunSignals()
        self._active[job_id] = signals
        heartbeat = asyncio.create_task(self._heartbeat(job_id, signals))
        start_time = time.monotonic()
        logger.info(f"Job {job_id} started by {self.runner_id}")

        try:
            job, items = self.store.get_job(job_id)
            pending_count = sum(1 for item in items if item.status == ItemStatus.PENDING)
            reporter = ProgressReporter(self.store, job, config, pending_count, progress_callback)
            scheduler = Scheduler(
                self.store, job, items, processor, config, signals, reporter,
                tuning_context=tuning_context,
                pause_poll_interval=self.pause_poll_interval,
                runner_id=self.runner_id,
            )
            results = await scheduler.run()

            summary = reporter.summary(
                int((time.monotonic() - start_time) * 1000),
                settled_before=len(items) - pending_count,
            )
            final_status = self._final_status(config, signals, reporter)

            if signals.is_lease_lost:
                logger.error(
                    f"Job {job_id} lease lost by {self.runner_id} after {len(results)} item(s); "
                    f"leaving the job to its current holder"
                )
            else:
                self.store.update_job_progress(job_id, {"results": {"summary": summary.model_dump()}})

            if not signals.is_cancelled and not signals.is_lease_lost:
                # A paused job whose last in-flight item settled has nothing left to resume
                settled = self.store.transition_job(
                    job_id, [JobStatus.RUNNING, JobStatus.PAUSED], final_status,
                    held_by=self.runner_id, completed_at=utcnow(),
                )
                if not settled:
                    logger.warning(f"Job {job_id} changed state or owner during the run; leaving it as is")

            final = self.store.get_job_record(job_id)
            reporter.notify(final.status)
            logger.info(
                f"Job {job_id} finished as {final.status.value}: {summary.completed}/{summary.total} successful, "
                f"{final.failed_items} failed"
            )
            return JobRunResult(job=final, item_results=results, summary=summary)
        except PersistenceError:
            logger.error(f"Job {job_id} aborted: job store failure")
            raise
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._active.pop(job_id, None)
            try:
                self.store.release_lease(job_id, self.runner_id)
            except PersistenceError as e:
                logger.error(f"Could not release lease on job {job_id}: {e}")

    def _final_status(self, config: ExecutionConfig, signals: RunSignals, reporter: ProgressReporter) -> JobStatus:
        if config.stop_on_error and signals.is_stopped:
            return JobStatus.FAILED
        attempted = len(reporter.results)
        if attempted and reporter.failed == attempted:
            return JobStatus.FAILED
        return JobStatus.COMPLETED

    async def _heartbeat(self, job_id: str, signals: RunSignals) -> None:
        """Keep the lease alive; flag the run when the lease is gone or can no longer be renewed"""
        interval = max(self.lease_seconds / 3, 0.01)
        deadline = time.monotonic() + self.lease_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = self.store.renew_lease(job_id, self.runner_id, self.lease_seconds)
            except PersistenceError as e:
                logger.error(f"Could not renew lease on job {job_id}: {e}")
                if time.monotonic() < deadline:
                    continue
                logger.error(f"Lease on job {job_id} expired before it could be renewed; stopping {self.runner_id}")
                signals.lose_lease()
                return
            if not renewed:
                logger.error(f"Job {job_id} was taken over by another runner; stopping {self.runner_id}")
                signals.lose_lease()
                return
            deadline = time.monotonic() + self.lease_seconds

    def pause(self, job_id: str) -> BatchJob:
        job = self.store.get_job_record(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidStateError(job_id, "pause", job.status)
        if not self.store.transition_job(job_id, [JobStatus.RUNNING], JobStatus.PAUSED):
            raise InvalidStateError(job_id, "pause", self.store.get_job_record(job_id).status)

        signals = self._active.get(job_id)
        if signals:
            signals.pause()
        logger.info(f"Job {job_id} paused")
        return self.store.get_job_record(job_id)

    def resume(self, job_id: str) -> BatchJob:
        """Hand a paused job back to its live run, or requeue it as pending if no run holds it"""
        job = self.store.get_job_record(job_id)
        if job.status != JobStatus.PAUSED:
            raise InvalidStateError(job_id, "resume", job.status)

        live = self.is_active(job_id) or self.store.has_live_lease(job)
        target = JobStatus.RUNNING if live else JobStatus.PENDING
        if not self.store.transition_job(job_id, [JobStatus.PAUSED], target):
            raise InvalidStateError(job_id, "resume", self.store.get_job_record(job_id).status)

        signals = self._active.get(job_id)
        if signals:
            signals.resume()
        if live:
            logger.info(f"Job {job_id} resumed")
        else:
            logger.info(f"Job {job_id} has no live run; requeued as pending")
        return self.store.get_job_record(job_id)

    def cancel(self, job_id: str) -> BatchJob:
        job = self.store.get_job_record(job_id)
        if job.status not in (JobStatus.RUNNING, JobStatus.PAUSED):
            raise InvalidStateError(job_id, "cancel", job.status)

        now = utcnow()
        if not self.store.transition_job(
            job_id, [JobStatus.RUNNING, JobStatus.PAUSED], JobStatus.FAILED,
            completed_at=now, cancelled_at=now,
        ):
            raise InvalidStateError(job_id, "cancel", self.store.get_job_record(job_id).status)
        self.store.append_error_log(job_id, "Job cancelled by user")

        signals = self._active.get(job_id)
        if signals:
            signals.cancel()
        logger.info(f"Job {job_id} cancelled")
        return self.store.get_job_record(job_id)

    def recover_stale_jobs(self) -> List[str]:
        return self.store.reset_stale_jobs()

    def get_job(self, job_id: str) -> Tuple[BatchJob, List[BatchJobItem]]:
        return self.store.get_job(job_id)
