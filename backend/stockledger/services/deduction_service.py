# Overview: FIFO Deduction Engine; applies allocation plans to batches inside locked transactions.

"""
Stock Deduction Service

INVARIANTS:
- Ingredient.current_stock == SUM(StockBatch.remaining_quantity) after every commit.
- A short plan without force makes ZERO mutations (InsufficientStock).
- A forced short plan deducts everything available, never more.
- One stock_out movement per batch touched; unit_cost = that batch's cost.
- A (reference, ingredient) pair is applied at most once.

ORDERS:
Order lines are aggregated per ingredient BEFORE allocation, then all
ingredients are locked in ascending id order and allocated in one
transaction. Each ingredient plans fully before it writes, so an
item-level failure (not found, insufficient, invalid) leaves that
ingredient untouched and its siblings unaffected.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from ..errors import AlreadyProcessed, InsufficientStock, LedgerInvariantError, NotFound, StockError
from ..models import BatchStatus, MovementType, ReferenceType, StockMovement
from ..time_utils import utcnow
from ..validation import ValidationError, optional_text, quantize_money, require_text, to_id, to_quantity
from .alert_service import Alert, AlertService, Severity
from .allocation import AllocationPlan, AllocationPolicy, plan_allocation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Errors that fail one ingredient of an order without touching the others
ITEM_ERRORS = (NotFound, InsufficientStock, ValidationError, AlreadyProcessed)

# Order references leave room for the "REV-" prefix of their reversal
MAX_REFERENCE_LENGTH = 60


class OutcomeStatus(str, enum.Enum):
    DEDUCTED = "deducted"
    PARTIAL = "partial"
    FAILED = "failed"
    ALREADY_PROCESSED = "already_processed"


class WarningType(str, enum.Enum):
    INSUFFICIENT_STOCK = "insufficient_stock"
    LOW_STOCK = "low_stock"


@dataclass(frozen=True)
class StockWarning:
    type: WarningType
    ingredient_id: int
    ingredient_name: str
    severity: Severity
    message: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "severity": self.severity.value,
            "message": self.message,
            "data": dict(self.data),
        }


@dataclass
class IngredientDeduction:
    """What one locked allocation actually did."""
    ingredient_id: int
    ingredient_name: str
    unit: str
    plan: AllocationPlan
    stock_before: Decimal
    stock_after: Decimal
    movement_ids: list[int] = field(default_factory=list)
    depleted_batch_ids: list[int] = field(default_factory=list)

    @property
    def quantity_requested(self) -> Decimal:
        return self.plan.quantity_needed

    @property
    def quantity_deducted(self) -> Decimal:
        return self.plan.quantity_allocated

    @property
    def shortage(self) -> Decimal:
        return self.plan.shortage

    @property
    def total_cost(self) -> Decimal:
        return self.plan.total_cost

    @property
    def average_cost_per_unit(self) -> Decimal:
        return self.plan.average_cost_per_unit

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "unit": self.unit,
            "quantity_requested": float(self.quantity_requested),
            "quantity_deducted": float(self.quantity_deducted),
            "shortage": float(self.shortage),
            "total_cost": float(self.total_cost),
            "average_cost_per_unit": float(self.average_cost_per_unit),
            "stock_before": float(self.stock_before),
            "stock_after": float(self.stock_after),
            "batches": [s.to_dict() for s in self.plan.slices],
            "movement_ids": list(self.movement_ids),
            "depleted_batch_ids": list(self.depleted_batch_ids),
        }


@dataclass
class IngredientOutcome:
    ingredient_id: int
    status: OutcomeStatus
    quantity_requested: Decimal
    deduction: IngredientDeduction | None = None
    error: StockError | None = None

    def to_dict(self) -> dict:
        payload = {
            "ingredient_id": self.ingredient_id,
            "status": self.status.value,
            "quantity_requested": float(self.quantity_requested),
        }
        if self.deduction is not None:
            payload["deduction"] = self.deduction.to_dict()
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass
class DeductionResult:
    reference: str
    outcomes: list[IngredientOutcome] = field(default_factory=list)
    warnings: list[StockWarning] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    @property
    def deductions(self) -> list[IngredientDeduction]:
        return [o.deduction for o in self.outcomes if o.deduction is not None]

    @property
    def total_cost(self) -> Decimal:
        return quantize_money(sum((d.total_cost for d in self.deductions), ZERO))

    @property
    def success(self) -> bool:
        return all(o.status in (OutcomeStatus.DEDUCTED, OutcomeStatus.ALREADY_PROCESSED) for o in self.outcomes)

    def outcome_for(self, ingredient_id: int) -> IngredientOutcome | None:
        for outcome in self.outcomes:
            if outcome.ingredient_id == ingredient_id:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "success": self.success,
            "total_cost": float(self.total_cost),
            "ingredients_count": len(self.outcomes),
            "deducted_count": len(self.deductions),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "warnings": [w.to_dict() for w in self.warnings],
            "alerts": [a.to_dict() for a in self.alerts],
        }


@dataclass
class PreviewLine:
    ingredient_id: int
    required: Decimal
    ingredient_name: str | None = None
    unit: str | None = None
    available: Decimal = ZERO
    plan: AllocationPlan | None = None
    stock_after: Decimal | None = None
    error: StockError | None = None

    @property
    def found(self) -> bool:
        return self.ingredient_name is not None

    @property
    def shortage(self) -> Decimal:
        return self.plan.shortage if self.plan is not None else self.required

    @property
    def sufficient(self) -> bool:
        return self.error is None and self.plan is not None and self.plan.is_complete

    @property
    def estimated_cost(self) -> Decimal:
        return self.plan.total_cost if self.plan is not None else quantize_money(ZERO)

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "unit": self.unit,
            "found": self.found,
            "required": float(self.required),
            "available": float(self.available),
            "sufficient": self.sufficient,
            "shortage": float(self.shortage),
            "estimated_cost": float(self.estimated_cost),
            "average_cost_per_unit": float(self.plan.average_cost_per_unit) if self.plan else 0.0,
            "stock_after": float(self.stock_after) if self.stock_after is not None else None,
            "batches": [s.to_dict() for s in self.plan.slices] if self.plan else [],
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class PreviewResult:
    lines: list[PreviewLine] = field(default_factory=list)
    warnings: list[StockWarning] = field(default_factory=list)

    @property
    def can_proceed(self) -> bool:
        return bool(self.lines) and all(line.sufficient for line in self.lines)

    @property
    def estimated_total_cost(self) -> Decimal:
        return quantize_money(sum((line.estimated_cost for line in self.lines), ZERO))

    def to_dict(self) -> dict:
        return {
            "can_proceed": self.can_proceed,
            "estimated_total_cost": float(self.estimated_total_cost),
            "lines": [line.to_dict() for line in self.lines],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def aggregate_requirements(requirements) -> dict[int, Decimal]:
    """
    Sum order lines per ingredient.

    Accepts (ingredient_id, quantity) pairs or {"ingredient_id", "quantity"}
    dicts. Returns {ingredient_id: total} in ascending id order.
    """
    if requirements is None:
        raise ValidationError("requirements are required")
    totals: dict[int, Decimal] = {}
    for index, line in enumerate(requirements):
        if isinstance(line, dict):
            raw_id, raw_qty = line.get("ingredient_id"), line.get("quantity")
        elif isinstance(line, (list, tuple)) and len(line) == 2:
            raw_id, raw_qty = line
        else:
            raise ValidationError(f"requirements[{index}] must be (ingredient_id, quantity)")
        ingredient_id = to_id(raw_id, f"requirements[{index}].ingredient_id")
        quantity = to_quantity(raw_qty, f"requirements[{index}].quantity")
        totals[ingredient_id] = totals.get(ingredient_id, ZERO) + quantity
    if not totals:
        raise ValidationError("requirements must not be empty")
    return dict(sorted(totals.items()))


def verify_aggregate(repo, ingredient) -> None:
    """Raise LedgerInvariantError unless current_stock equals the batch remainders."""
    batch_total = sum((b.remaining_quantity for b in repo.list_batches(ingredient.id)), ZERO)
    if batch_total != ingredient.current_stock:
        logger.error(
            "ledger invariant broken for ingredient %s: stock=%s batches=%s",
            ingredient.id, ingredient.current_stock, batch_total,
        )
        raise LedgerInvariantError(ingredient.id, ingredient.current_stock, batch_total)


def _shortage_warning(deduction: IngredientDeduction) -> StockWarning:
    return StockWarning(
        type=WarningType.INSUFFICIENT_STOCK,
        ingredient_id=deduction.ingredient_id,
        ingredient_name=deduction.ingredient_name,
        severity=Severity.HIGH,
        message=(
            f"Only {deduction.quantity_deducted} of {deduction.quantity_requested} {deduction.unit} "
            f"of {deduction.ingredient_name} could be deducted"
        ),
        data={
            "requested": float(deduction.quantity_requested),
            "deducted": float(deduction.quantity_deducted),
            "shortage": float(deduction.shortage),
        },
    )


class DeductionService:
    def __init__(self, repo, alert_service: AlertService | None = None):
        self.repo = repo
        self.alerts = alert_service or AlertService(repo)

    # Locked primitive

    def apply_locked(
        self,
        ingredient,
        quantity: Decimal,
        *,
        reference: str,
        reference_type: ReferenceType = ReferenceType.ORDER,
        movement_type: MovementType = MovementType.STOCK_OUT,
        policy: AllocationPolicy = AllocationPolicy.FIFO,
        batch_ids: Sequence[int] | None = None,
        force: bool = False,
        performed_by: str | None = None,
        reason: str | None = None,
        record_processed: bool = True,
    ) -> IngredientDeduction:
        """
        Allocate and apply one deduction. Caller must hold the ingredient lock
        (StockRepository.run_locked).

        Everything that can fail for this ingredient alone is checked before
        the first write.
        """
        if movement_type.direction >= 0:
            raise ValueError(f"{movement_type.value} does not remove stock")
        if record_processed and self.repo.is_processed(reference, ingredient.id):
            raise AlreadyProcessed(reference, ingredient.id)

        batches = self.repo.list_batches(ingredient.id)
        plan = plan_allocation(batches, quantity, policy, batch_ids)
        if not plan.is_complete and not force:
            raise InsufficientStock(
                ingredient.id, ingredient.name, plan.quantity_needed, plan.available, ingredient.unit
            )

        now = utcnow()
        by_id = {b.id: b for b in batches}
        stock_before = ingredient.current_stock
        stock = stock_before
        result = IngredientDeduction(
            ingredient_id=ingredient.id,
            ingredient_name=ingredient.name,
            unit=ingredient.unit,
            plan=plan,
            stock_before=stock_before,
            stock_after=stock_before,
        )

        for item in plan.slices:
            batch = by_id[item.batch_id]
            batch.remaining_quantity = batch.remaining_quantity - item.quantity
            if batch.remaining_quantity == ZERO:
                batch.status = BatchStatus.CONSUMED
                result.depleted_batch_ids.append(batch.id)
            batch.updated_at = now

            movement = self.repo.add_movement(
                StockMovement(
                    ingredient_id=ingredient.id,
                    batch_id=batch.id,
                    movement_type=movement_type,
                    quantity=item.quantity,
                    unit_cost=item.cost_per_unit,
                    total_cost=item.total_cost,
                    stock_before=stock,
                    stock_after=stock - item.quantity,
                    reference=reference,
                    reference_type=reference_type,
                    reason=reason,
                    performed_by=performed_by,
                    created_at=now,
                )
            )
            result.movement_ids.append(movement.id)
            stock -= item.quantity

        ingredient.current_stock = stock
        ingredient.updated_at = now
        result.stock_after = stock

        self.verify_aggregate(ingredient)
        if record_processed:
            self.repo.mark_processed(reference, ingredient.id, reference_type)
        return result

    def verify_aggregate(self, ingredient) -> None:
        verify_aggregate(self.repo, ingredient)

    # Public operations

    def deduct(
        self,
        ingredient_id,
        quantity,
        *,
        reference: str,
        policy=AllocationPolicy.FIFO,
        batch_ids: Sequence[int] | None = None,
        force: bool = False,
        performed_by: str | None = None,
        reference_type: ReferenceType = ReferenceType.ORDER,
        movement_type: MovementType = MovementType.STOCK_OUT,
        reason: str | None = None,
    ) -> DeductionResult:
        """Deduct one ingredient. Item-level failures are raised, not reported."""
        ingredient_id = to_id(ingredient_id, "ingredient_id")
        quantity = to_quantity(quantity)
        reference = require_text(reference, "reference", max_length=MAX_REFERENCE_LENGTH)
        policy = AllocationPolicy.parse(policy)
        reason = optional_text(reason, "reason")
        if batch_ids:
            batch_ids = [to_id(raw, f"batch_ids[{i}]") for i, raw in enumerate(batch_ids)]

        def _op(locked):
            ingredient = locked.get(ingredient_id)
            if ingredient is None:
                raise NotFound("Ingredient", ingredient_id)
            return self.apply_locked(
                ingredient,
                quantity,
                reference=reference,
                reference_type=reference_type,
                movement_type=movement_type,
                policy=policy,
                batch_ids=batch_ids,
                force=force,
                performed_by=performed_by,
                reason=reason,
            )

        deduction = self.repo.run_locked([ingredient_id], _op)
        status = OutcomeStatus.PARTIAL if deduction.shortage > ZERO else OutcomeStatus.DEDUCTED
        result = DeductionResult(
            reference=reference,
            outcomes=[IngredientOutcome(ingredient_id, status, quantity, deduction=deduction)],
        )
        self._finish(result)
        return result

    def deduct_for_order(
        self,
        reference: str,
        requirements,
        *,
        policy=AllocationPolicy.FIFO,
        batch_ids: Sequence[int] | None = None,
        force: bool = False,
        performed_by: str | None = None,
    ) -> DeductionResult:
        """
        Deduct every ingredient of an order under one reference.

        Raises AlreadyProcessed when every ingredient was already applied
        under the reference; otherwise reports one outcome per ingredient.
        For specific_batch, batch_ids is one flat list covering all
        ingredients; each ingredient uses the ids of its own batches.
        """
        reference = require_text(reference, "reference", max_length=MAX_REFERENCE_LENGTH)
        totals = aggregate_requirements(requirements)
        policy = AllocationPolicy.parse(policy)
        batch_plan = self._split_batch_ids(batch_ids, totals) if policy is AllocationPolicy.SPECIFIC_BATCH else {}

        def _op(locked):
            already = {iid for iid in totals if self.repo.is_processed(reference, iid)}
            if already == set(totals):
                raise AlreadyProcessed(reference)

            outcomes = []
            for ingredient_id, quantity in totals.items():
                if ingredient_id in already:
                    outcomes.append(IngredientOutcome(ingredient_id, OutcomeStatus.ALREADY_PROCESSED, quantity))
                    continue
                ingredient = locked.get(ingredient_id)
                try:
                    if ingredient is None:
                        raise NotFound("Ingredient", ingredient_id)
                    deduction = self.apply_locked(
                        ingredient,
                        quantity,
                        reference=reference,
                        reference_type=ReferenceType.ORDER,
                        policy=policy,
                        batch_ids=batch_plan.get(ingredient_id),
                        force=force,
                        performed_by=performed_by,
                    )
                except ITEM_ERRORS as exc:
                    outcomes.append(IngredientOutcome(ingredient_id, OutcomeStatus.FAILED, quantity, error=exc))
                    continue
                status = OutcomeStatus.PARTIAL if deduction.shortage > ZERO else OutcomeStatus.DEDUCTED
                outcomes.append(IngredientOutcome(ingredient_id, status, quantity, deduction=deduction))
            return outcomes

        outcomes = self.repo.run_locked(list(totals), _op)
        result = DeductionResult(reference=reference, outcomes=outcomes)
        self._finish(result)

        failed = [o for o in outcomes if o.status is OutcomeStatus.FAILED]
        logger.info(
            "order %s: %d ingredient(s) deducted, %d failed, cost %s",
            reference, len(result.deductions), len(failed), result.total_cost,
        )
        return result

    def preview(self, requirements, *, policy=AllocationPolicy.FIFO, batch_ids: Sequence[int] | None = None) -> PreviewResult:
        """Run the same allocation as deduct_for_order with no locks and no writes."""
        totals = aggregate_requirements(requirements)
        policy = AllocationPolicy.parse(policy)
        result = PreviewResult()

        batch_plan: dict[int, list[int]] = {}
        if policy is AllocationPolicy.SPECIFIC_BATCH:
            batch_plan = self._split_batch_ids(batch_ids, totals)

        for ingredient_id, quantity in totals.items():
            line = PreviewLine(ingredient_id=ingredient_id, required=quantity)
            result.lines.append(line)

            ingredient = self.repo.get_ingredient(ingredient_id)
            if ingredient is None:
                line.error = NotFound("Ingredient", ingredient_id)
                continue
            line.ingredient_name = ingredient.name
            line.unit = ingredient.unit

            try:
                line.plan = plan_allocation(
                    self.repo.list_batches(ingredient_id), quantity, policy, batch_plan.get(ingredient_id)
                )
            except (NotFound, ValidationError) as exc:
                line.error = exc
                continue

            line.available = line.plan.available
            line.stock_after = ingredient.current_stock - line.plan.quantity_allocated

            if not line.plan.is_complete:
                result.warnings.append(
                    StockWarning(
                        type=WarningType.INSUFFICIENT_STOCK,
                        ingredient_id=ingredient.id,
                        ingredient_name=ingredient.name,
                        severity=Severity.HIGH,
                        message=(
                            f"Need {quantity} {ingredient.unit} of {ingredient.name}, "
                            f"only {line.available} available"
                        ),
                        data={"required": float(quantity), "available": float(line.available),
                              "shortage": float(line.shortage)},
                    )
                )
            elif line.stock_after <= (ingredient.min_stock or ZERO):
                result.warnings.append(
                    StockWarning(
                        type=WarningType.LOW_STOCK,
                        ingredient_id=ingredient.id,
                        ingredient_name=ingredient.name,
                        severity=Severity.MEDIUM,
                        message=(
                            f"{ingredient.name} would drop to {line.stock_after} {ingredient.unit} "
                            f"(minimum {ingredient.min_stock})"
                        ),
                        data={"stock_after": float(line.stock_after), "min_stock": float(ingredient.min_stock or 0)},
                    )
                )

        return result

    # Helpers

    def _split_batch_ids(self, batch_ids, totals: dict[int, Decimal]) -> dict[int, list[int]]:
        if not batch_ids:
            raise ValidationError("batch_ids are required for specific_batch allocation")
        plan: dict[int, list[int]] = {}
        for index, raw in enumerate(batch_ids):
            batch_id = to_id(raw, f"batch_ids[{index}]")
            batch = self.repo.get_batch(batch_id)
            if batch is None or batch.ingredient_id not in totals:
                raise NotFound("Batch", batch_id)
            plan.setdefault(batch.ingredient_id, []).append(batch_id)
        return plan

    def _finish(self, result: DeductionResult) -> None:
        depleted: list[int] = []
        for deduction in result.deductions:
            depleted.extend(deduction.depleted_batch_ids)
            if deduction.shortage > ZERO:
                result.warnings.append(_shortage_warning(deduction))
        result.alerts = self.alerts.for_ingredients(
            [d.ingredient_id for d in result.deductions], depleted_batch_ids=depleted
        )
