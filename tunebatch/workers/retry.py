import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..models.job import BatchJobItem, ItemResult, ItemStatus, ProcessorOutcome

logger = logging.getLogger(__name__)

# Processors take (item, tuning_context) and return an outcome, sync or async.
# Sync processors are called off the event loop.
ItemProcessor = Callable[
    [BatchJobItem, Any],
    Union[ProcessorOutcome, Mapping[str, Any], Awaitable[Union[ProcessorOutcome, Mapping[str, Any]]]],
]


def backoff_delay_ms(retry_delay_ms: int, attempt: int) -> int:
    """Linear backoff: the wait after attempt N (0-based) is delay * (N + 1)"""
    return retry_delay_ms * (attempt + 1)


async def call_processor(processor: ItemProcessor, item: BatchJobItem, tuning_context: Any) -> ProcessorOutcome:
    if inspect.iscoroutinefunction(processor):
        result = await processor(item, tuning_context)
    else:
        # Plain callables may block, so they run on a worker thread
        result = await asyncio.to_thread(processor, item, tuning_context)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, ProcessorOutcome):
        return result
    return ProcessorOutcome.model_validate(result)


async def process_item_with_retry(store, item: BatchJobItem, processor: ItemProcessor, tuning_context: Any,
                                  retry_attempts: int, retry_delay_ms: int) -> ItemResult:
    """Run one item through the processor, retrying failed attempts with linear backoff.

    Processor failures, raised or returned, always come back as a result value.
    Store failures while marking the item are not item failures and propagate.
    """
    start_time = time.monotonic()
    last_error: Optional[str] = None
    attempts = 0

    store.update_item(item.id, {"status": ItemStatus.PROCESSING})

    for attempt in range(retry_attempts + 1):
        attempts = attempt + 1
        try:
            outcome = await call_processor(processor, item, tuning_context)
            if outcome.success:
                return ItemResult(
                    item_id=item.id,
                    sequence_number=item.sequence_number,
                    success=True,
                    output=outcome.output,
                    cost=outcome.cost,
                    attempts=attempts,
                    processing_time_ms=_elapsed_ms(start_time),
                )
            last_error = outcome.error or "Processor reported failure"
        except Exception as e:
            last_error = str(e) or e.__class__.__name__

        logger.warning(f"Item {item.sequence_number} ({item.id}) attempt {attempts} failed: {last_error}")

        if attempt < retry_attempts:
            await asyncio.sleep(backoff_delay_ms(retry_delay_ms, attempt) / 1000)

    return ItemResult(
        item_id=item.id,
        sequence_number=item.sequence_number,
        success=False,
        error=last_error or "Max retries exceeded",
        attempts=attempts,
        processing_time_ms=_elapsed_ms(start_time),
    )


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)
