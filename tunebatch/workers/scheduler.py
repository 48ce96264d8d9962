import asyncio
import logging
from collections import deque
from typing import Any, List, Optional

from ..models.errors import NotFoundError, PersistenceError
from ..models.job import (
    BatchJob, BatchJobItem, ExecutionConfig, ItemResult, ItemStatus, JobStatus, utcnow,
)
from .progress import ProgressReporter
from .retry import ItemProcessor, process_item_with_retry
from .signals import RunSignals

logger = logging.getLogger(__name__)


class Scheduler:
    """Drains a job's pending items across at most `concurrency` worker tasks.

    Items are claimed in sequence order. Settled items are never queued, so
    running the scheduler again on a partly processed job only picks up what
    is still pending.
    """

    def __init__(self, store, job: BatchJob, items: List[BatchJobItem], processor: ItemProcessor,
                 config: ExecutionConfig, signals: RunSignals, reporter: ProgressReporter,
                 tuning_context: Any = None, pause_poll_interval: float = 1.0, runner_id: Optional[str] = None):
        self.store = store
        self.runner_id = runner_id
        self.job = job
        self.processor = processor
        self.config = config
        self.signals = signals
        self.reporter = reporter
        self.tuning_context = tuning_context
        self.pause_poll_interval = pause_poll_interval
        pending = sorted(
            (item for item in items if item.status == ItemStatus.PENDING),
            key=lambda item: item.sequence_number,
        )
        self.queue = deque(pending)
        self.results: List[ItemResult] = []
        self.persistence_error: Optional[PersistenceError] = None

    @property
    def worker_count(self) -> int:
        return min(self.config.concurrency, len(self.queue))

    async def run(self) -> List[ItemResult]:
        if not self.queue:
            logger.info(f"Job {self.job.id} has no pending items")
            return self.results

        workers = [asyncio.create_task(self._worker(n + 1)) for n in range(self.worker_count)]
        await asyncio.gather(*workers)

        if self.persistence_error is not None:
            raise self.persistence_error
        return self.results

    def sync_control_state(self) -> None:
        """Pick up pause, resume, cancel or a lost lease written to the store by another process"""
        try:
            job = self.store.get_job_record(self.job.id)
        except NotFoundError:
            # Deleted out from under us
            self.signals.cancel()
            return

        if self.runner_id is not None and job.locked_by != self.runner_id:
            logger.error(f"Job {self.job.id} is now held by {job.locked_by or 'nobody'}; stopping {self.runner_id}")
            self.signals.lose_lease()
            return

        if job.status == JobStatus.PAUSED:
            self.signals.pause()
        elif job.status == JobStatus.RUNNING:
            self.signals.resume()
        elif job.is_terminal:
            self.signals.cancel()

    async def _wait_while_paused(self, worker_log: logging.Logger) -> None:
        if self.signals.is_paused:
            worker_log.info(f"Job {self.job.id} paused, waiting")
        while self.signals.is_paused and not self.signals.should_stop:
            resumed = await self.signals.wait_until_resumed(self.pause_poll_interval)
            if not resumed:
                self.sync_control_state()

    async def _worker(self, worker_id: int) -> None:
        worker_log = logger.getChild(f"worker_{worker_id}")

        while self.queue and not self.signals.should_stop:
            try:
                self.sync_control_state()
                await self._wait_while_paused(worker_log)
                if self.signals.should_stop or not self.queue:
                    break

                # No await between the check above and this pop, so no two workers claim one item
                item = self.queue.popleft()
                await self._process(item, worker_log)
            except PersistenceError as e:
                if self.persistence_error is None:
                    self.persistence_error = e
                self.signals.stop()
                break

            if self.queue and self.config.delay_between_items > 0 and not self.signals.should_stop:
                await asyncio.sleep(self.config.delay_between_items / 1000)

    async def _process(self, item: BatchJobItem, worker_log: logging.Logger) -> None:
        result = await process_item_with_retry(
            self.store,
            item,
            self.processor,
            self.tuning_context,
            self.config.retry_attempts,
            self.config.retry_delay_ms,
        )
        self.results.append(result)

        try:
            settled = self.store.update_item(item.id, {
                "status": ItemStatus.COMPLETED if result.success else ItemStatus.FAILED,
                "output_data": result.output if result.success else None,
                "error_message": None if result.success else result.error,
                "processing_time_ms": result.processing_time_ms,
                "processed_at": utcnow(),
            })
        except PersistenceError:
            state = "succeeded" if result.success else "failed"
            worker_log.error(
                f"Lost update: item {item.sequence_number} of job {self.job.id} {state} "
                f"but its outcome could not be saved"
            )
            raise

        if not settled:
            worker_log.warning(f"Item {item.sequence_number} of job {self.job.id} was already settled elsewhere")
            return

        self.reporter.record(item, result)

        if result.success:
            worker_log.info(f"Item {item.sequence_number} of job {self.job.id} completed")
            return

        worker_log.error(
            f"Item {item.sequence_number} of job {self.job.id} failed after {result.attempts} attempt(s): "
            f"{result.error}"
        )
        if self.config.stop_on_error:
            worker_log.warning(f"Stopping job {self.job.id} on error")
            self.signals.stop()
