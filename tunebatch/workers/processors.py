from typing import Any, Dict

from ..models.job import BatchJobItem, ProcessorOutcome, utcnow
from .retry import ItemProcessor


def create_echo_processor() -> ItemProcessor:
    """Succeeds with the item's input as its output"""
    async def process(item: BatchJobItem, tuning_context: Any) -> ProcessorOutcome:
        return ProcessorOutcome(success=True, output=item.input_data)
    return process


def create_validation_processor() -> ItemProcessor:
    """Queues a generation for validation; items must carry a generationId"""
    async def process(item: BatchJobItem, tuning_context: Any) -> ProcessorOutcome:
        input_data = item.input_data if isinstance(item.input_data, dict) else {}
        generation_id = input_data.get("generationId")
        if not generation_id:
            return ProcessorOutcome(success=False, error="Missing required field: generationId")

        return ProcessorOutcome(
            success=True,
            output={
                "generationId": generation_id,
                "validationStatus": "pending",
                "timestamp": utcnow().isoformat(),
            },
        )
    return process


PROCESSORS: Dict[str, Any] = {
    "echo": create_echo_processor,
    "validation": create_validation_processor,
}
