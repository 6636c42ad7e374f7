# Overview: Pure batch allocation (FIFO / LIFO / specific batch); no I/O.

"""
Batch Allocation

plan_allocation() decides which batches cover a requested quantity and at
what cost. It never mutates a batch: the deduction service applies the plan
inside a locked transaction, the preview shows it without one.

Costing:
- each slice costs quantity * batch.cost_per_unit (nearest cent, half-up)
- average_cost_per_unit is the batch-weighted cost of the whole plan
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from ..errors import NotFound
from ..validation import ValidationError, quantize_money, quantize_quantity

ZERO = Decimal("0")


class AllocationPolicy(str, enum.Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    SPECIFIC_BATCH = "specific_batch"

    @classmethod
    def parse(cls, value) -> "AllocationPolicy":
        if value is None:
            return cls.FIFO
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValidationError(f"Invalid allocation policy '{value}'. Must be one of: {allowed}")


@dataclass(frozen=True)
class BatchSlice:
    batch_id: int
    batch_number: str
    quantity: Decimal
    cost_per_unit: Decimal
    total_cost: Decimal
    remaining_after: Decimal
    expiry_date: date | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "quantity": float(self.quantity),
            "cost_per_unit": float(self.cost_per_unit),
            "total_cost": float(self.total_cost),
            "remaining_after": float(self.remaining_after),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }


@dataclass(frozen=True)
class AllocationPlan:
    quantity_needed: Decimal
    available: Decimal
    slices: tuple[BatchSlice, ...] = field(default_factory=tuple)

    @property
    def quantity_allocated(self) -> Decimal:
        return sum((s.quantity for s in self.slices), ZERO)

    @property
    def shortage(self) -> Decimal:
        return max(self.quantity_needed - self.quantity_allocated, ZERO)

    @property
    def is_complete(self) -> bool:
        return self.shortage == ZERO

    @property
    def total_cost(self) -> Decimal:
        return quantize_money(sum((s.total_cost for s in self.slices), ZERO))

    @property
    def average_cost_per_unit(self) -> Decimal:
        allocated = self.quantity_allocated
        if allocated == ZERO:
            return quantize_money(ZERO)
        return quantize_money(self.total_cost / allocated)

    @property
    def batches_used(self) -> int:
        return len(self.slices)


def order_batches(batches: Iterable, policy: AllocationPolicy, batch_ids: Sequence[int] | None = None) -> list:
    """
    Order candidate batches for consumption.

    fifo: oldest received first, ties broken by creation order (id)
    lifo: exact reverse of fifo
    specific_batch: the caller's list, in the caller's order
    """
    rows = list(batches)
    if policy is AllocationPolicy.FIFO:
        return sorted(rows, key=lambda b: (b.received_date, b.id))
    if policy is AllocationPolicy.LIFO:
        return sorted(rows, key=lambda b: (b.received_date, b.id), reverse=True)
    if policy is AllocationPolicy.SPECIFIC_BATCH:
        if not batch_ids:
            raise ValidationError("batch_ids are required for specific_batch allocation")
        by_id = {b.id: b for b in rows}
        ordered = []
        for batch_id in batch_ids:
            if batch_id not in by_id:
                raise NotFound("Batch", batch_id)
            if by_id[batch_id] not in ordered:
                ordered.append(by_id[batch_id])
        return ordered
    raise ValueError(f"unhandled allocation policy: {policy}")


def plan_allocation(
    batches: Iterable,
    quantity_needed: Decimal,
    policy: AllocationPolicy = AllocationPolicy.FIFO,
    batch_ids: Sequence[int] | None = None,
) -> AllocationPlan:
    """
    Take min(still needed, batch remaining) from each ordered batch until the
    requested quantity is covered or the batches run out.

    available is the total remaining over the candidate batches (for
    specific_batch, only the named ones).
    """
    needed = quantize_quantity(quantity_needed)
    candidates = [b for b in order_batches(batches, policy, batch_ids) if b.remaining_quantity > ZERO]
    available = sum((b.remaining_quantity for b in candidates), ZERO)

    slices = []
    outstanding = needed
    for batch in candidates:
        if outstanding <= ZERO:
            break
        take = min(outstanding, batch.remaining_quantity)
        slices.append(
            BatchSlice(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=take,
                cost_per_unit=batch.cost_per_unit,
                total_cost=quantize_money(take * batch.cost_per_unit),
                remaining_after=batch.remaining_quantity - take,
                expiry_date=batch.expiry_date,
            )
        )
        outstanding -= take

    return AllocationPlan(quantity_needed=needed, available=available, slices=tuple(slices))
