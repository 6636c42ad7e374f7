# Overview: Reconciliation Processor; aligns recorded stock with physical counts.

"""
Physical Count Reconciliation

For each counted ingredient (each in its own locked transaction):

    difference = physical_count - current_stock

- |difference| < tolerance           -> skipped, nothing written
- difference > 0 (found stock)       -> NEW batch of the difference at the
                                        ingredient's baseline cost (or the
                                        supplied unit_cost) + stock_in movement
- difference < 0 (missing stock)     -> FIFO deduction of the shortfall through
                                        the deduction engine (stock_out)

Both directions use reference_type=reconciliation and one REC-... reference
for the whole run. Existing batch history is never edited.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from ..errors import AlreadyProcessed, LedgerInvariantError, NotFound, StockError
from ..models import MovementType, ReferenceType
from ..validation import ValidationError, optional_text, require_text, to_date, to_id, to_money, to_quantity
from .alert_service import Alert
from .deduction_service import DeductionService
from .receive_service import ReceiveService

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")


def new_reconciliation_reference() -> str:
    return f"REC-{uuid.uuid4().hex[:12].upper()}"


@dataclass
class CountItem:
    ingredient_id: int
    physical_count: Decimal
    reason: str | None = None
    unit_cost: Decimal | None = None
    expiry_date: object = None


@dataclass
class ReconciliationLine:
    ingredient_id: int
    physical_count: Decimal
    ingredient_name: str | None = None
    system_count: Decimal | None = None
    difference: Decimal | None = None
    adjustment_made: bool = False
    batch_id: int | None = None
    movement_ids: list[int] = field(default_factory=list)
    depleted_batch_ids: list[int] = field(default_factory=list)
    reason: str | None = None
    error: StockError | None = None

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "system_count": float(self.system_count) if self.system_count is not None else None,
            "physical_count": float(self.physical_count),
            "difference": float(self.difference) if self.difference is not None else None,
            "adjustment_made": self.adjustment_made,
            "batch_id": self.batch_id,
            "movement_ids": list(self.movement_ids),
            "reason": self.reason,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ReconciliationResult:
    reference: str
    lines: list[ReconciliationLine] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    @property
    def adjusted_count(self) -> int:
        return sum(1 for line in self.lines if line.adjustment_made)

    @property
    def failed_count(self) -> int:
        return sum(1 for line in self.lines if line.error is not None)

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "adjusted_count": self.adjusted_count,
            "failed_count": self.failed_count,
            "lines": [line.to_dict() for line in self.lines],
            "alerts": [a.to_dict() for a in self.alerts],
        }


def parse_count_items(items) -> list[CountItem]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("items must be a non-empty list")

    parsed: list[CountItem] = []
    seen: set[int] = set()
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        ingredient_id = to_id(raw.get("ingredient_id"), f"items[{index}].ingredient_id")
        if ingredient_id in seen:
            raise ValidationError(f"Ingredient {ingredient_id} is counted more than once")
        seen.add(ingredient_id)
        unit_cost = raw.get("unit_cost")
        parsed.append(
            CountItem(
                ingredient_id=ingredient_id,
                physical_count=to_quantity(raw.get("physical_count"), f"items[{index}].physical_count", allow_zero=True),
                reason=optional_text(raw.get("reason"), f"items[{index}].reason"),
                unit_cost=to_money(unit_cost, f"items[{index}].unit_cost") if unit_cost is not None else None,
                expiry_date=to_date(raw.get("expiry_date"), f"items[{index}].expiry_date"),
            )
        )
    return parsed


class ReconciliationService:
    def __init__(
        self,
        repo,
        deductions: DeductionService,
        receiving: ReceiveService,
        *,
        tolerance: Decimal = DEFAULT_TOLERANCE,
    ):
        self.repo = repo
        self.deductions = deductions
        self.receiving = receiving
        self.tolerance = tolerance

    def reconcile(self, items, *, performed_by=None, notes=None, reference=None) -> ReconciliationResult:
        counts = parse_count_items(items)
        reference = require_text(reference, "reference", max_length=64) if reference else new_reconciliation_reference()
        notes = optional_text(notes, "notes")

        result = ReconciliationResult(reference=reference)
        for item in counts:
            line = ReconciliationLine(
                ingredient_id=item.ingredient_id,
                physical_count=item.physical_count,
                reason=item.reason or notes,
            )
            try:
                self.repo.run_locked(
                    [item.ingredient_id],
                    lambda locked, item=item, line=line: self._reconcile_locked(locked, item, line, reference, performed_by),
                )
            except LedgerInvariantError:
                raise
            except StockError as exc:
                logger.warning("reconciliation %s: ingredient %s failed: %s", reference, item.ingredient_id, exc)
                line.error = exc
                line.adjustment_made = False
                line.batch_id = None
                line.movement_ids = []
                line.depleted_batch_ids = []
            result.lines.append(line)

        adjusted = [line for line in result.lines if line.adjustment_made]
        depleted = [bid for line in adjusted for bid in line.depleted_batch_ids]
        result.alerts = self.deductions.alerts.for_ingredients(
            [line.ingredient_id for line in adjusted], depleted_batch_ids=depleted
        )
        logger.info(
            "reconciliation %s: %d counted, %d adjusted, %d failed",
            reference, len(result.lines), result.adjusted_count, result.failed_count,
        )
        return result

    def _reconcile_locked(self, locked, item: CountItem, line: ReconciliationLine, reference: str, performed_by) -> None:
        ingredient = locked.get(item.ingredient_id)
        if ingredient is None:
            raise NotFound("Ingredient", item.ingredient_id)
        line.ingredient_name = ingredient.name

        system_count = ingredient.current_stock
        difference = item.physical_count - system_count
        line.system_count = system_count
        line.difference = difference

        if abs(difference) < self.tolerance:
            return
        if self.repo.is_processed(reference, ingredient.id):
            raise AlreadyProcessed(reference, ingredient.id)

        reason = line.reason or "Physical count reconciliation"
        if difference > 0:
            received = self.receiving.add_batch_locked(
                ingredient,
                difference,
                unit_cost=item.unit_cost,
                expiry_date=item.expiry_date,
                reference=reference,
                reference_type=ReferenceType.RECONCILIATION,
                reason=reason,
                performed_by=performed_by,
            )
            line.batch_id = received.batch.id
            line.movement_ids = [received.movement.id]
        else:
            deduction = self.deductions.apply_locked(
                ingredient,
                -difference,
                reference=reference,
                reference_type=ReferenceType.RECONCILIATION,
                movement_type=MovementType.STOCK_OUT,
                performed_by=performed_by,
                reason=reason,
                record_processed=False,
            )
            line.movement_ids = list(deduction.movement_ids)
            line.depleted_batch_ids = list(deduction.depleted_batch_ids)

        self.repo.mark_processed(reference, ingredient.id, ReferenceType.RECONCILIATION)
        line.adjustment_made = True
