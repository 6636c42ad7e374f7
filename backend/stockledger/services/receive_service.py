# Overview: Service-layer operations for receiving stock; creates batches plus stock_in movements.

"""
Batch Receiving Service

WHY: every unit of stock must be explained by a batch remainder. Stock only
ever enters the ledger as a NEW batch (purchase receipt, manual addition,
reconciliation surplus, order reversal); existing batches are never topped up.

BATCH NUMBERS:
- Supplied numbers must be unique per ingredient.
- Generated numbers: BATCH-<ingredient id, 4 digits>-<YYYYMMDD>-<daily seq, 3 digits>

VALIDATION:
- quantity > 0, unit_cost >= 0 (defaults to the ingredient's baseline cost)
- received_date not in the future
- expiry_date not before received_date
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from ..errors import LedgerInvariantError, NotFound, StockError
from ..models import BatchStatus, MovementType, ReferenceType, StockBatch, StockMovement
from ..time_utils import utc_today, utcnow
from ..validation import (
    ValidationError,
    optional_text,
    quantize_money,
    to_date,
    to_id,
    to_money,
    to_quantity,
)
from .deduction_service import verify_aggregate

logger = logging.getLogger(__name__)


@dataclass
class ReceivedBatch:
    batch: StockBatch
    movement: StockMovement
    stock_before: Decimal
    stock_after: Decimal

    def to_dict(self) -> dict:
        return {
            "batch": self.batch.to_dict(),
            "movement_id": self.movement.id,
            "stock_before": float(self.stock_before),
            "stock_after": float(self.stock_after),
        }


@dataclass
class ReceiveLineResult:
    index: int
    ingredient_id: int | None
    received: ReceivedBatch | None = None
    error: StockError | None = None

    @property
    def success(self) -> bool:
        return self.received is not None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "ingredient_id": self.ingredient_id,
            "success": self.success,
            "batch": self.received.batch.to_dict() if self.received else None,
            "error": self.error.to_dict() if self.error else None,
        }


def validate_batch_dates(received_date, expiry_date, *, today: date | None = None) -> tuple[date, date | None]:
    today = today or utc_today()
    received = to_date(received_date, "received_date") or today
    expiry = to_date(expiry_date, "expiry_date")
    if received > today:
        raise ValidationError("received_date cannot be in the future")
    if expiry is not None and expiry < received:
        raise ValidationError("expiry_date cannot be before received_date")
    return received, expiry


class ReceiveService:
    def __init__(self, repo):
        self.repo = repo

    def generate_batch_number(self, ingredient_id: int, received_date: date) -> str:
        prefix = f"BATCH-{ingredient_id:04d}-{received_date:%Y%m%d}-"
        sequence = self.repo.count_batches_with_prefix(ingredient_id, prefix) + 1
        number = f"{prefix}{sequence:03d}"
        while self.repo.batch_number_exists(ingredient_id, number):
            sequence += 1
            number = f"{prefix}{sequence:03d}"
        return number

    def add_batch_locked(
        self,
        ingredient,
        quantity: Decimal,
        *,
        unit_cost: Decimal | None = None,
        received_date: date | None = None,
        expiry_date: date | None = None,
        batch_number: str | None = None,
        supplier_name: str | None = None,
        reference: str | None = None,
        reference_type: ReferenceType = ReferenceType.PURCHASE,
        reason: str | None = None,
        notes: str | None = None,
        performed_by: str | None = None,
    ) -> ReceivedBatch:
        """
        Create a batch and its stock_in movement. Caller must hold the
        ingredient lock (StockRepository.run_locked).
        """
        received_date = received_date or utc_today()
        cost = unit_cost if unit_cost is not None else quantize_money(ingredient.cost_per_unit or Decimal("0"))

        if batch_number:
            if self.repo.batch_number_exists(ingredient.id, batch_number):
                raise ValidationError(f"Batch number {batch_number} already exists for {ingredient.name}")
        else:
            batch_number = self.generate_batch_number(ingredient.id, received_date)

        now = utcnow()
        batch = self.repo.add_batch(
            StockBatch(
                ingredient_id=ingredient.id,
                batch_number=batch_number,
                initial_quantity=quantity,
                remaining_quantity=quantity,
                cost_per_unit=cost,
                received_date=received_date,
                expiry_date=expiry_date,
                status=BatchStatus.ACTIVE,
                supplier_name=supplier_name,
                reference=reference,
                notes=notes,
                created_by=performed_by,
                created_at=now,
                updated_at=now,
            )
        )

        stock_before = ingredient.current_stock
        stock_after = stock_before + quantity
        movement = self.repo.add_movement(
            StockMovement(
                ingredient_id=ingredient.id,
                batch_id=batch.id,
                movement_type=MovementType.STOCK_IN,
                quantity=quantity,
                unit_cost=cost,
                total_cost=quantize_money(quantity * cost),
                stock_before=stock_before,
                stock_after=stock_after,
                reference=reference or batch_number,
                reference_type=reference_type,
                reason=reason,
                performed_by=performed_by,
                created_at=now,
            )
        )

        ingredient.current_stock = stock_after
        ingredient.updated_at = now
        verify_aggregate(self.repo, ingredient)
        return ReceivedBatch(batch=batch, movement=movement, stock_before=stock_before, stock_after=stock_after)

    def receive(
        self,
        ingredient_id,
        quantity,
        *,
        unit_cost=None,
        expiry_date=None,
        batch_number=None,
        received_date=None,
        supplier_name=None,
        reference=None,
        notes=None,
        performed_by=None,
    ) -> StockBatch:
        """Record a purchase receipt as a new batch; returns the batch."""
        return self.receive_detailed(
            ingredient_id,
            quantity,
            unit_cost=unit_cost,
            expiry_date=expiry_date,
            batch_number=batch_number,
            received_date=received_date,
            supplier_name=supplier_name,
            reference=reference,
            notes=notes,
            performed_by=performed_by,
        ).batch

    def receive_detailed(
        self,
        ingredient_id,
        quantity,
        *,
        unit_cost=None,
        expiry_date=None,
        batch_number=None,
        received_date=None,
        supplier_name=None,
        reference=None,
        notes=None,
        performed_by=None,
    ) -> ReceivedBatch:
        ingredient_id = to_id(ingredient_id, "ingredient_id")
        quantity = to_quantity(quantity)
        cost = to_money(unit_cost) if unit_cost is not None else None
        received, expiry = validate_batch_dates(received_date, expiry_date)
        batch_number = optional_text(batch_number, "batch_number", max_length=50)
        supplier_name = optional_text(supplier_name, "supplier_name", max_length=100)
        reference = optional_text(reference, "reference", max_length=64)
        notes = optional_text(notes, "notes")

        def _op(locked):
            ingredient = locked.get(ingredient_id)
            if ingredient is None:
                raise NotFound("Ingredient", ingredient_id)
            return self.add_batch_locked(
                ingredient,
                quantity,
                unit_cost=cost,
                received_date=received,
                expiry_date=expiry,
                batch_number=batch_number,
                supplier_name=supplier_name,
                reference=reference,
                reference_type=ReferenceType.PURCHASE,
                notes=notes,
                performed_by=performed_by,
            )

        received_batch = self.repo.run_locked([ingredient_id], _op)
        logger.info(
            "received %s into ingredient %s as batch %s",
            quantity, ingredient_id, received_batch.batch.batch_number,
        )
        return received_batch

    def receive_many(self, lines, *, performed_by=None) -> list[ReceiveLineResult]:
        """Receive several lines; each line commits on its own and reports its own result."""
        if not isinstance(lines, (list, tuple)) or not lines:
            raise ValidationError("lines must be a non-empty list")

        results = []
        for index, line in enumerate(lines):
            if not isinstance(line, dict):
                results.append(ReceiveLineResult(index, None, error=ValidationError(f"lines[{index}] must be an object")))
                continue
            ingredient_id = line.get("ingredient_id")
            try:
                received = self.receive_detailed(
                    ingredient_id,
                    line.get("quantity"),
                    unit_cost=line.get("unit_cost"),
                    expiry_date=line.get("expiry_date"),
                    batch_number=line.get("batch_number"),
                    received_date=line.get("received_date"),
                    supplier_name=line.get("supplier_name"),
                    reference=line.get("reference"),
                    notes=line.get("notes"),
                    performed_by=performed_by,
                )
            except LedgerInvariantError:
                raise
            except StockError as exc:
                logger.warning("receive line %d failed: %s", index, exc)
                results.append(ReceiveLineResult(index, ingredient_id, error=exc))
                continue
            results.append(ReceiveLineResult(index, ingredient_id, received=received))
        return results
