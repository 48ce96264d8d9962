from typing import Dict
from pydantic import BaseModel

from .errors import ValidationError

# API spend per item, by job type
COST_PER_ITEM: Dict[str, float] = {
    "generation": 0.05,
    "validation": 0.01,
    "analysis": 0.02,
    "default": 0.03,
}


class CostEstimate(BaseModel):
    estimated_cost: float
    cost_breakdown: Dict[str, float]


def unit_cost(job_type: str) -> float:
    return COST_PER_ITEM.get(job_type, COST_PER_ITEM["default"])


def estimate_cost(job_type: str, item_count: int) -> CostEstimate:
    """Estimate what a job of `item_count` items of `job_type` will cost"""
    if item_count < 0:
        raise ValidationError(f"Item count must not be negative, got {item_count}")

    per_item = unit_cost(job_type)
    total = item_count * per_item
    return CostEstimate(
        estimated_cost=round(total, 2),
        cost_breakdown={
            "item_count": item_count,
            "cost_per_item": per_item,
            "total": total,
        },
    )
