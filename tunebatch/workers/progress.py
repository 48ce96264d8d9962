import logging
from typing import Callable, List, Optional

from ..models.job import (
    BatchJob, BatchJobItem, BatchProgress, ExecutionConfig, ItemResult, JobStatus, JobSummary, utcnow,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgress], None]


class ProgressReporter:
    """Turns item outcomes into job counters and observer notifications.

    Counters are written as increments, so totals from earlier runs of the
    same job carry over. The callback is advisory: it is called at most once
    per settled item and its errors are only logged.
    """

    def __init__(self, store, job: BatchJob, config: ExecutionConfig, pending_count: int,
                 callback: Optional[ProgressCallback] = None):
        self.store = store
        self.job = job
        self.config = config
        self.pending_count = pending_count
        self.callback = callback
        self.base_processed = job.processed_items
        self.base_failed = job.failed_items
        self.results: List[ItemResult] = []

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def record(self, item: BatchJobItem, result: ItemResult) -> None:
        self.results.append(result)

        if result.success:
            self.store.increment_job_counters(self.job.id, processed=1, cost=result.cost or 0.0)
        else:
            self.store.increment_job_counters(self.job.id, failed=1)
            self.store.append_error_log(self.job.id, f"Item {item.sequence_number}: {result.error}")

        self.notify(current_item=f"Item {item.sequence_number}")

    def snapshot(self, status: JobStatus = JobStatus.RUNNING, current_item: str = None) -> BatchProgress:
        return BatchProgress(
            job_id=self.job.id,
            status=status,
            total=self.job.total_items,
            processed=self.base_processed + self.completed,
            failed=self.base_failed + self.failed,
            current_item=current_item,
            estimated_time_remaining_ms=self.estimated_time_remaining_ms(),
            started_at=self.job.started_at,
            last_updated=utcnow(),
        )

    def notify(self, status: JobStatus = JobStatus.RUNNING, current_item: str = None) -> None:
        if not self.callback:
            return
        try:
            self.callback(self.snapshot(status, current_item))
        except Exception as e:
            logger.warning(f"Progress callback for job {self.job.id} raised: {e}")

    def estimated_time_remaining_ms(self) -> Optional[int]:
        if not self.results:
            return None
        remaining = max(self.pending_count - len(self.results), 0)
        average = sum(r.processing_time_ms for r in self.results) / len(self.results)
        return int(average * remaining / self.config.concurrency)

    def summary(self, total_processing_time_ms: int, settled_before: int) -> JobSummary:
        processed = len(self.results)
        return JobSummary(
            total=self.job.total_items,
            completed=self.completed,
            failed=self.failed,
            skipped=settled_before + max(self.pending_count - processed, 0),
            total_processing_time_ms=total_processing_time_ms,
            average_processing_time_ms=round(total_processing_time_ms / processed) if processed else 0,
        )
