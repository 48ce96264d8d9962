import pytest

from tunebatch.models.cost import COST_PER_ITEM, estimate_cost
from tunebatch.models.errors import ValidationError


def test_estimate_is_deterministic():
    first = estimate_cost("generation", 20)
    assert first.estimated_cost == 1.0
    assert all(estimate_cost("generation", 20) == first for _ in range(5))


def test_unknown_type_uses_default_rate():
    result = estimate_cost("summarize", 10)
    assert result.cost_breakdown["cost_per_item"] == COST_PER_ITEM["default"]
    assert result.estimated_cost == 0.3


def test_estimate_rounds_to_cents():
    assert estimate_cost("validation", 7).estimated_cost == 0.07
    assert estimate_cost("analysis", 333).estimated_cost == 6.66


def test_negative_count_rejected():
    with pytest.raises(ValidationError):
        estimate_cost("generation", -1)
