import asyncio
import threading

import pytest

from tunebatch.models.errors import PersistenceError, ValidationError
from tunebatch.models.job import ExecutionConfig, ItemStatus, JobStatus, ProcessorOutcome
from tunebatch.storage.database import Storage
from tunebatch.workers import scheduler
from tunebatch.workers.lifecycle import JobController
from tunebatch.workers.progress import ProgressReporter
from tunebatch.workers.scheduler import Scheduler
from tunebatch.workers.signals import RunSignals


async def succeed(item, context):
    return ProcessorOutcome(success=True, output={"echo": item.input_data})


@pytest.mark.asyncio
async def test_happy_path(storage, controller, make_job):
    job, _ = make_job(5, concurrency=2, retry_attempts=0)

    result = await controller.start(job.id, succeed)

    stored, items = storage.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.processed_items == 5
    assert stored.failed_items == 0
    assert stored.completed_at is not None
    assert stored.locked_by is None
    assert all(item.status == ItemStatus.COMPLETED for item in items)
    assert items[0].output_data == {"echo": {"n": 1}}
    assert result.summary.completed == 5
    assert stored.results["summary"]["completed"] == 5


@pytest.mark.asyncio
async def test_retry_recovers_item(storage, controller, make_job):
    job, _ = make_job(1, retry_attempts=1)
    attempts = []

    async def flaky(item, context):
        attempts.append(item.sequence_number)
        if len(attempts) == 1:
            raise ConnectionError("reset by peer")
        return {"success": True, "output": "done"}

    await controller.start(job.id, flaky)

    stored, items = storage.get_job(job.id)
    assert attempts == [1, 1]
    assert items[0].status == ItemStatus.COMPLETED
    assert stored.failed_items == 0
    assert stored.processed_items == 1


@pytest.mark.asyncio
async def test_permanent_failures_without_stop_on_error(storage, controller, make_job):
    job, _ = make_job(10, concurrency=3, retry_attempts=0, stop_on_error=False)
    failing = {2, 5, 9}

    async def processor(item, context):
        if item.sequence_number in failing:
            return {"success": False, "error": "grounding search failed"}
        return {"success": True}

    await controller.start(job.id, processor)

    stored, items = storage.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.processed_items == 7
    assert stored.failed_items == 3
    assert sorted(stored.error_log) == sorted(
        f"Item {n}: grounding search failed" for n in failing
    )
    failed = [item for item in items if item.status == ItemStatus.FAILED]
    assert {item.sequence_number for item in failed} == failing
    assert all(item.error_message == "grounding search failed" for item in failed)
    assert all(item.output_data is None for item in failed)


@pytest.mark.asyncio
async def test_job_fails_when_every_attempted_item_fails(storage, controller, make_job):
    job, _ = make_job(3, retry_attempts=0)

    async def processor(item, context):
        raise RuntimeError("model unavailable")

    await controller.start(job.id, processor)

    stored = storage.get_job_record(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failed_items == 3
    assert not stored.is_cancelled


@pytest.mark.asyncio
async def test_concurrency_bound(storage, controller, make_job):
    job, _ = make_job(8, concurrency=3, retry_attempts=0)
    in_flight = 0
    peak = 0
    peak_processing = 0

    async def processor(item, context):
        nonlocal in_flight, peak, peak_processing
        in_flight += 1
        peak = max(peak, in_flight)
        _, processing = storage.list_items(job.id, status=ItemStatus.PROCESSING)
        peak_processing = max(peak_processing, processing)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return {"success": True}

    await controller.start(job.id, processor)

    assert peak == 3
    assert peak_processing <= 3
    assert storage.get_job_record(job.id).processed_items == 8


@pytest.mark.asyncio
async def test_items_are_claimed_in_sequence_order(storage, controller, make_job):
    job, _ = make_job(6, concurrency=2, retry_attempts=0)
    claimed = []

    async def processor(item, context):
        claimed.append(item.sequence_number)
        await asyncio.sleep(0.001 * (7 - item.sequence_number))
        return {"success": True}

    await controller.start(job.id, processor)

    assert claimed == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_stop_on_error_leaves_remaining_items_pending(storage, controller, make_job):
    concurrency = 2
    job, _ = make_job(10, concurrency=concurrency, retry_attempts=0, stop_on_error=True)
    calls = []

    async def processor(item, context):
        calls.append(item.sequence_number)
        await asyncio.sleep(0.01)
        if item.sequence_number == 3:
            return {"success": False, "error": "rejected by blacklist"}
        return {"success": True}

    await controller.start(job.id, processor)

    stored, items = storage.get_job(job.id)
    assert len(calls) <= concurrency + 2
    assert stored.status == JobStatus.FAILED
    assert stored.failed_items == 1
    assert stored.error_log == ["Item 3: rejected by blacklist"]
    pending = [item for item in items if item.status == ItemStatus.PENDING]
    assert len(pending) == 10 - len(calls)


@pytest.mark.asyncio
async def test_rerun_only_processes_pending_items(storage, controller, make_job):
    job, items = make_job(5, retry_attempts=0)
    storage.update_item(items[0].id, {"status": ItemStatus.COMPLETED})
    storage.update_item(items[1].id, {"status": ItemStatus.FAILED, "error_message": "earlier run"})
    storage.increment_job_counters(job.id, processed=1, failed=1)
    seen = []

    async def processor(item, context):
        seen.append(item.sequence_number)
        return {"success": True}

    result = await controller.start(job.id, processor)

    stored = storage.get_job_record(job.id)
    assert seen == [3, 4, 5]
    assert stored.processed_items == 4
    assert stored.failed_items == 1
    assert stored.status == JobStatus.COMPLETED
    assert result.summary.skipped == 2


@pytest.mark.asyncio
async def test_job_without_pending_items_completes_immediately(storage, controller, make_job):
    job, items = make_job(2)
    for item in items:
        storage.update_item(item.id, {"status": ItemStatus.COMPLETED})

    async def processor(item, context):
        raise AssertionError("nothing should be processed")

    result = await controller.start(job.id, processor)

    assert result.item_results == []
    assert storage.get_job_record(job.id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_non_positive_concurrency_is_rejected_before_scheduling(storage, controller, make_job):
    job, _ = make_job(2)

    with pytest.raises(ValidationError):
        await controller.start(job.id, succeed, config_overrides={"concurrency": 0})

    stored, items = storage.get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert all(item.status == ItemStatus.PENDING for item in items)


@pytest.mark.asyncio
async def test_progress_snapshots_keep_counters_within_total(storage, controller, make_job):
    job, _ = make_job(4, concurrency=2, retry_attempts=0)
    snapshots = []
    settled_counts = []

    def on_progress(progress):
        snapshots.append(progress)
        stored = storage.get_job_record(job.id)
        settled_counts.append((stored.processed_items + stored.failed_items, stored.total_items))

    async def processor(item, context):
        return {"success": item.sequence_number != 4, "error": "nope"}

    await controller.start(job.id, processor, progress_callback=on_progress)

    assert settled_counts
    assert all(settled <= total for settled, total in settled_counts)
    running = [s for s in snapshots if s.status == JobStatus.RUNNING]
    assert len(running) == 4
    assert running[-1].processed + running[-1].failed == 4
    assert {s.current_item for s in running} == {"Item 1", "Item 2", "Item 3", "Item 4"}
    assert snapshots[-1].status == JobStatus.COMPLETED
    assert snapshots[-1].processed == 3
    assert snapshots[-1].failed == 1


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_the_run(storage, controller, make_job):
    job, _ = make_job(3)

    def on_progress(progress):
        raise RuntimeError("ui went away")

    await controller.start(job.id, succeed, progress_callback=on_progress)

    assert storage.get_job_record(job.id).processed_items == 3


@pytest.mark.asyncio
async def test_processor_cost_rolls_into_actual_cost(storage, controller, make_job):
    job, _ = make_job(4)

    async def processor(item, context):
        return {"success": True, "cost": 0.25}

    await controller.start(job.id, processor)

    assert storage.get_job_record(job.id).actual_cost == pytest.approx(1.0)


class UnsavableOutcomes(Storage):
    def update_item(self, item_id, updates):
        if updates.get("status") in (ItemStatus.COMPLETED, ItemStatus.FAILED):
            raise PersistenceError("database is locked")
        return super().update_item(item_id, updates)


@pytest.mark.asyncio
async def test_lost_outcome_write_aborts_the_run(temp_db):
    store = UnsavableOutcomes(temp_db)
    controller = JobController(store)
    job, _ = controller.create_job("test job", "generation", [{"n": 1}, {"n": 2}, {"n": 3}],
                                   {"concurrency": 1, "retry_delay_ms": 0, "delay_between_items": 0})

    with pytest.raises(PersistenceError):
        await controller.start(job.id, succeed)

    stored = store.get_job_record(job.id)
    assert stored.processed_items == 0
    assert stored.failed_items == 0
    assert stored.locked_by is None
    assert not controller.is_active(job.id)


@pytest.mark.asyncio
async def test_sync_processors_do_not_block_each_other(storage, controller, make_job):
    job, _ = make_job(3, concurrency=3, retry_attempts=0)
    # Every call has to be in flight at once for the barrier to open
    barrier = threading.Barrier(3, timeout=2)

    def processor(item, context):
        barrier.wait()
        return {"success": True}

    result = await controller.start(job.id, processor)

    assert result.job.status == JobStatus.COMPLETED
    assert result.job.processed_items == 3
    assert result.job.failed_items == 0


@pytest.mark.asyncio
async def test_delay_between_items_follows_every_item_but_the_last(storage, controller, monkeypatch):
    job, items = controller.create_job("paced", "generation", [{"n": n} for n in range(4)],
                                       {"concurrency": 1, "retry_attempts": 0, "delay_between_items": 250})
    real_sleep = asyncio.sleep
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr(scheduler.asyncio, "sleep", fake_sleep)
    config = ExecutionConfig.merge(job.config)
    runner = Scheduler(storage, job, items, succeed, config, RunSignals(), ProgressReporter(storage, job, config, 4))

    results = await runner.run()

    assert [result.sequence_number for result in results] == [1, 2, 3, 4]
    assert delays == [0.25, 0.25, 0.25]
