from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from stockledger.errors import NotFound
from stockledger.services.allocation import AllocationPolicy, order_batches, plan_allocation
from stockledger.validation import ValidationError


def _batch(batch_id, remaining, cost, received, number=None, expiry=None):
    return SimpleNamespace(
        id=batch_id,
        batch_number=number or f"B{batch_id}",
        remaining_quantity=Decimal(str(remaining)),
        cost_per_unit=Decimal(str(cost)),
        received_date=received,
        expiry_date=expiry,
    )


@pytest.fixture
def two_batches():
    return [
        _batch(2, 5, "1200.00", date(2026, 3, 2)),
        _batch(1, 5, "1000.00", date(2026, 3, 1)),
    ]


def test_fifo_consumes_oldest_batch_first(two_batches):
    plan = plan_allocation(two_batches, Decimal("7"))

    assert [(s.batch_id, s.quantity) for s in plan.slices] == [(1, Decimal("5")), (2, Decimal("2"))]
    assert plan.slices[0].remaining_after == Decimal("0")
    assert plan.slices[1].remaining_after == Decimal("3")
    assert plan.is_complete


def test_weighted_cost_across_batches(two_batches):
    plan = plan_allocation(two_batches, Decimal("7"))

    assert plan.total_cost == Decimal("7400.00")
    assert plan.average_cost_per_unit == Decimal("1057.14")


def test_lifo_consumes_newest_batch_first(two_batches):
    plan = plan_allocation(two_batches, Decimal("7"), AllocationPolicy.LIFO)

    assert [(s.batch_id, s.quantity) for s in plan.slices] == [(2, Decimal("5")), (1, Decimal("2"))]
    assert plan.total_cost == Decimal("8000.00")


def test_fifo_ties_break_on_creation_order():
    same_day = date(2026, 3, 1)
    batches = [_batch(9, 1, "1", same_day), _batch(4, 1, "2", same_day)]

    assert [b.id for b in order_batches(batches, AllocationPolicy.FIFO)] == [4, 9]


def test_short_plan_reports_shortage_and_takes_everything():
    batches = [_batch(1, 3, "10", date(2026, 1, 1)), _batch(2, 5, "10", date(2026, 1, 2))]

    plan = plan_allocation(batches, Decimal("20"))

    assert not plan.is_complete
    assert plan.available == Decimal("8")
    assert plan.quantity_allocated == Decimal("8")
    assert plan.shortage == Decimal("12")


def test_empty_batches_are_skipped():
    batches = [_batch(1, 0, "10", date(2026, 1, 1)), _batch(2, 4, "12", date(2026, 1, 2))]

    plan = plan_allocation(batches, Decimal("2"))

    assert plan.batches_used == 1
    assert plan.slices[0].batch_id == 2


def test_nothing_available_has_zero_average_cost():
    plan = plan_allocation([], Decimal("1"))

    assert plan.average_cost_per_unit == Decimal("0.00")
    assert plan.shortage == Decimal("1.000")


def test_specific_batch_follows_caller_order(two_batches):
    plan = plan_allocation(two_batches, Decimal("6"), AllocationPolicy.SPECIFIC_BATCH, [2, 1])

    assert [(s.batch_id, s.quantity) for s in plan.slices] == [(2, Decimal("5")), (1, Decimal("1"))]


def test_specific_batch_only_counts_named_batches(two_batches):
    plan = plan_allocation(two_batches, Decimal("6"), AllocationPolicy.SPECIFIC_BATCH, [1])

    assert plan.available == Decimal("5")
    assert plan.shortage == Decimal("1")


def test_specific_batch_requires_ids(two_batches):
    with pytest.raises(ValidationError):
        plan_allocation(two_batches, Decimal("1"), AllocationPolicy.SPECIFIC_BATCH, [])


def test_specific_batch_unknown_id_is_not_found(two_batches):
    with pytest.raises(NotFound):
        plan_allocation(two_batches, Decimal("1"), AllocationPolicy.SPECIFIC_BATCH, [99])


def test_policy_parsing():
    assert AllocationPolicy.parse(None) is AllocationPolicy.FIFO
    assert AllocationPolicy.parse("LIFO") is AllocationPolicy.LIFO
    with pytest.raises(ValidationError):
        AllocationPolicy.parse("newest")


def test_plan_never_mutates_batches(two_batches):
    plan_allocation(two_batches, Decimal("10"))

    assert [b.remaining_quantity for b in two_batches] == [Decimal("5"), Decimal("5")]
