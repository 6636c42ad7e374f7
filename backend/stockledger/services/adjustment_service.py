# Overview: Manual stock adjustments, batch write-offs and order reversals.

"""
Manual Adjustment Service

adjustment_type:
- addition    new batch + stock_in (reference_type=manual)
- deduction   deduction engine, stock_out (reference_type=manual)
- waste       deduction engine, stock_out (reference_type=waste, reason required)
- adjustment  signed quantity; positive behaves like addition, negative goes
              through the deduction engine as an `adjustment` movement

batch_id turns a deduction / waste / negative adjustment into a
specific_batch allocation of that one batch.

Write-offs and reversals:
- write_off_batch consumes a batch's whole remainder as a `waste` movement
  (reference_type=expiry); whether to waste is decided by the operator.
- reverse_deduction answers every stock_out of a reference with a NEW batch
  at the original cost, received date and expiry (reference REV-<reference>).
  Movements are never edited.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from ..errors import AlreadyProcessed, ConcurrencyConflict, LedgerInvariantError, NotFound, StockError
from ..models import MovementType, ReferenceType
from ..validation import ValidationError, optional_text, require_text, to_date, to_id, to_money, to_quantity
from .alert_service import Alert
from .allocation import AllocationPolicy
from .deduction_service import MAX_REFERENCE_LENGTH, DeductionService, IngredientDeduction
from .receive_service import ReceivedBatch, ReceiveService

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class AdjustmentKind(str, enum.Enum):
    ADDITION = "addition"
    DEDUCTION = "deduction"
    WASTE = "waste"
    ADJUSTMENT = "adjustment"


def _reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


@dataclass
class AdjustmentLine:
    index: int
    ingredient_id: int | None
    adjustment_type: str | None
    quantity: Decimal | None = None
    reference: str | None = None
    new_stock_level: Decimal | None = None
    batch_id: int | None = None
    movement_ids: list[int] = field(default_factory=list)
    depleted_batch_ids: list[int] = field(default_factory=list)
    total_cost: Decimal | None = None
    error: StockError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "ingredient_id": self.ingredient_id,
            "adjustment_type": self.adjustment_type,
            "quantity": float(self.quantity) if self.quantity is not None else None,
            "reference": self.reference,
            "success": self.success,
            "new_stock_level": float(self.new_stock_level) if self.new_stock_level is not None else None,
            "batch_id": self.batch_id,
            "movement_ids": list(self.movement_ids),
            "total_cost": float(self.total_cost) if self.total_cost is not None else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class AdjustmentResult:
    lines: list[AdjustmentLine] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for line in self.lines if line.success)

    def to_dict(self) -> dict:
        return {
            "success_count": self.success_count,
            "failed_count": len(self.lines) - self.success_count,
            "lines": [line.to_dict() for line in self.lines],
            "alerts": [a.to_dict() for a in self.alerts],
        }


@dataclass
class ReversalResult:
    reference: str
    reversal_reference: str
    batches: list[ReceivedBatch] = field(default_factory=list)

    @property
    def quantity_restored(self) -> dict[int, Decimal]:
        restored: dict[int, Decimal] = {}
        for received in self.batches:
            iid = received.batch.ingredient_id
            restored[iid] = restored.get(iid, ZERO) + received.batch.initial_quantity
        return restored

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "reversal_reference": self.reversal_reference,
            "quantity_restored": {str(k): float(v) for k, v in self.quantity_restored.items()},
            "batches": [received.to_dict() for received in self.batches],
        }


class AdjustmentService:
    def __init__(self, repo, deductions: DeductionService, receiving: ReceiveService):
        self.repo = repo
        self.deductions = deductions
        self.receiving = receiving

    # Manual adjustments

    def apply(self, adjustments, *, performed_by=None) -> AdjustmentResult:
        """Apply each adjustment in its own transaction; report every line."""
        if not isinstance(adjustments, (list, tuple)) or not adjustments:
            raise ValidationError("adjustments must be a non-empty list")

        result = AdjustmentResult()
        for index, raw in enumerate(adjustments):
            line = AdjustmentLine(
                index=index,
                ingredient_id=raw.get("ingredient_id") if isinstance(raw, dict) else None,
                adjustment_type=raw.get("adjustment_type") if isinstance(raw, dict) else None,
            )
            try:
                self._apply_one(raw, line, performed_by)
            except LedgerInvariantError:
                raise
            except StockError as exc:
                logger.warning("adjustment line %d failed: %s", index, exc)
                line.error = exc
                line.new_stock_level = None
                line.batch_id = None
                line.movement_ids = []
                line.depleted_batch_ids = []
            result.lines.append(line)

        touched = [line.ingredient_id for line in result.lines if line.success]
        depleted = [bid for line in result.lines if line.success for bid in line.depleted_batch_ids]
        result.alerts = self.deductions.alerts.for_ingredients(touched, depleted_batch_ids=depleted)
        return result

    def _apply_one(self, raw, line: AdjustmentLine, performed_by) -> None:
        if not isinstance(raw, dict):
            raise ValidationError(f"adjustments[{line.index}] must be an object")
        field_prefix = f"adjustments[{line.index}]"

        ingredient_id = to_id(raw.get("ingredient_id"), f"{field_prefix}.ingredient_id")
        line.ingredient_id = ingredient_id
        try:
            kind = AdjustmentKind(str(raw.get("adjustment_type") or "").strip().lower())
        except ValueError:
            allowed = ", ".join(k.value for k in AdjustmentKind)
            raise ValidationError(f"{field_prefix}.adjustment_type must be one of: {allowed}")
        line.adjustment_type = kind.value

        signed = kind is AdjustmentKind.ADJUSTMENT
        quantity = to_quantity(raw.get("quantity"), f"{field_prefix}.quantity", allow_negative=signed)
        line.quantity = quantity

        reason = optional_text(raw.get("reason"), f"{field_prefix}.reason")
        if kind is AdjustmentKind.WASTE and reason is None:
            raise ValidationError(f"{field_prefix}.reason is required for waste")

        batch_id = raw.get("batch_id")
        batch_ids = [to_id(batch_id, f"{field_prefix}.batch_id")] if batch_id is not None else None
        unit_cost = raw.get("cost_per_unit")
        unit_cost = to_money(unit_cost, f"{field_prefix}.cost_per_unit") if unit_cost is not None else None
        expiry_date = to_date(raw.get("expiry_date"), f"{field_prefix}.expiry_date")

        if kind is AdjustmentKind.ADDITION or (signed and quantity > ZERO):
            line.reference = _reference("ADJ")

            def _op(locked):
                ingredient = self._locked_ingredient(locked, ingredient_id)
                return self.receiving.add_batch_locked(
                    ingredient,
                    quantity,
                    unit_cost=unit_cost,
                    expiry_date=expiry_date,
                    reference=line.reference,
                    reference_type=ReferenceType.MANUAL,
                    reason=reason,
                    performed_by=performed_by,
                )

            received = self.repo.run_locked([ingredient_id], _op)
            line.batch_id = received.batch.id
            line.movement_ids = [received.movement.id]
            line.new_stock_level = received.stock_after
            line.total_cost = received.movement.total_cost
            return

        if kind is AdjustmentKind.WASTE:
            line.reference = _reference("WASTE")
            reference_type, movement_type = ReferenceType.WASTE, MovementType.STOCK_OUT
        elif kind is AdjustmentKind.DEDUCTION:
            line.reference = _reference("ADJ")
            reference_type, movement_type = ReferenceType.MANUAL, MovementType.STOCK_OUT
        elif kind is AdjustmentKind.ADJUSTMENT:
            line.reference = _reference("ADJ")
            reference_type, movement_type = ReferenceType.MANUAL, MovementType.ADJUSTMENT
        else:
            raise ValueError(f"unhandled adjustment type: {kind}")

        def _deduct(locked):
            ingredient = self._locked_ingredient(locked, ingredient_id)
            return self.deductions.apply_locked(
                ingredient,
                abs(quantity),
                reference=line.reference,
                reference_type=reference_type,
                movement_type=movement_type,
                policy=AllocationPolicy.SPECIFIC_BATCH if batch_ids else AllocationPolicy.FIFO,
                batch_ids=batch_ids,
                performed_by=performed_by,
                reason=reason,
            )

        deduction: IngredientDeduction = self.repo.run_locked([ingredient_id], _deduct)
        line.movement_ids = list(deduction.movement_ids)
        line.depleted_batch_ids = list(deduction.depleted_batch_ids)
        line.new_stock_level = deduction.stock_after
        line.total_cost = deduction.total_cost

    @staticmethod
    def _locked_ingredient(locked, ingredient_id):
        ingredient = locked.get(ingredient_id)
        if ingredient is None:
            raise NotFound("Ingredient", ingredient_id)
        return ingredient

    # Write-off

    def write_off_batch(self, batch_id, *, reason=None, performed_by=None) -> IngredientDeduction:
        """Waste the whole remainder of one batch (typically an expired one)."""
        batch_id = to_id(batch_id, "batch_id")
        reason = optional_text(reason, "reason") or "Batch written off"
        batch = self.repo.get_batch(batch_id)
        if batch is None:
            raise NotFound("Batch", batch_id)
        ingredient_id = batch.ingredient_id

        def _op(locked):
            ingredient = self._locked_ingredient(locked, ingredient_id)
            current = self.repo.get_batch(batch_id)
            if current.remaining_quantity <= ZERO:
                raise ValidationError(f"Batch {current.batch_number} has nothing left to write off")
            return self.deductions.apply_locked(
                ingredient,
                current.remaining_quantity,
                reference=f"WRITEOFF-{current.id}",
                reference_type=ReferenceType.EXPIRY,
                movement_type=MovementType.WASTE,
                policy=AllocationPolicy.SPECIFIC_BATCH,
                batch_ids=[current.id],
                performed_by=performed_by,
                reason=reason,
            )

        deduction = self.repo.run_locked([ingredient_id], _op)
        logger.info("wrote off batch %s: %s %s", batch_id, deduction.quantity_deducted, deduction.unit)
        return deduction

    # Reversal

    def reverse_deduction(self, reference, *, reason=None, performed_by=None) -> ReversalResult:
        """Compensating stock-in for every stock_out recorded under reference."""
        reference = require_text(reference, "reference", max_length=MAX_REFERENCE_LENGTH)
        reason = optional_text(reason, "reason") or f"Reversal of {reference}"
        reversal_reference = f"REV-{reference}"

        # Lock set only; the movements are read again under the locks
        seen = self.repo.list_movements(reference=reference, movement_type=MovementType.STOCK_OUT)
        if not seen:
            raise NotFound("Deduction", reference)
        ingredient_ids = sorted({m.ingredient_id for m in seen})

        def _op(locked):
            movements = self.repo.list_movements(reference=reference, movement_type=MovementType.STOCK_OUT)
            if not movements:
                raise NotFound("Deduction", reference)
            if not {m.ingredient_id for m in movements} <= set(ingredient_ids):
                raise ConcurrencyConflict(f"Deduction {reference} changed while it was being reversed")
            for ingredient_id in ingredient_ids:
                if self.repo.is_processed(reversal_reference, ingredient_id):
                    raise AlreadyProcessed(reversal_reference, ingredient_id)

            result = ReversalResult(reference=reference, reversal_reference=reversal_reference)
            for ingredient_id in ingredient_ids:
                ingredient = self._locked_ingredient(locked, ingredient_id)
                for movement in (m for m in movements if m.ingredient_id == ingredient_id):
                    source = self.repo.get_batch(movement.batch_id) if movement.batch_id else None
                    result.batches.append(
                        self.receiving.add_batch_locked(
                            ingredient,
                            movement.quantity,
                            unit_cost=movement.unit_cost,
                            received_date=source.received_date if source else None,
                            expiry_date=source.expiry_date if source else None,
                            reference=reversal_reference,
                            reference_type=ReferenceType.REVERSAL,
                            reason=reason,
                            performed_by=performed_by,
                        )
                    )
                self.repo.mark_processed(reversal_reference, ingredient_id, ReferenceType.REVERSAL)
            return result

        result = self.repo.run_locked(ingredient_ids, _op)
        logger.info("reversed %s: %d batch(es) restored", reference, len(result.batches))
        return result
