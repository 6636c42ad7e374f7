# Overview: Read-side ledger operations; history, replay, verification, valuation, stats and reorder planning.

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from ..errors import NotFound
from ..models import BatchStatus, MovementType, ReferenceType
from ..time_utils import utc_today, utcnow
from ..validation import ValidationError, quantize_money, quantize_quantity, to_decimal, to_id
from .alert_service import AlertType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

"""
Stock Ledger Invariants (authoritative)

- StockMovement rows are append-only; nothing updates or deletes them.
- Replaying an ingredient's movements in id order reproduces:
    current_stock        = SUM(signed quantity)
    batch remaining      = SUM(signed quantity) per batch_id
- current_stock == SUM(StockBatch.remaining_quantity) at all times.
- Stats and valuation are computed on demand, never persisted.
"""

OUTGOING_TYPES = (MovementType.STOCK_OUT, MovementType.WASTE, MovementType.ADJUSTMENT)

"""
Reorder suggestions (derived from the movement log, never stored)

    daily_consumption = net outgoing quantity over the last `days` / days
                        (reversal stock-ins are netted out)
    reorder_point     = daily_consumption * lead_time_days
                        + min_stock * safety_multiplier
    suggested         = max(max_stock - current_stock,
                            reorder_point - current_stock)

An active ingredient is suggested when current_stock <= reorder_point and
there is something to order. Urgency: critical at zero stock, high at or
below half of min_stock, medium at or below min_stock, low otherwise.
"""

DEFAULT_LEAD_TIME_DAYS = 7
DEFAULT_SAFETY_MULTIPLIER = Decimal("1.5")
DEFAULT_CONSUMPTION_DAYS = 30
DEFAULT_TOP_CONSUMED = 10
DAYS_PER_YEAR = Decimal("365")
RATE_STEP = Decimal("0.01")
DAYS_STEP = Decimal("0.1")


class Urgency(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return list(Urgency).index(self)


def _urgency(current: Decimal, min_stock: Decimal) -> Urgency:
    if current <= ZERO:
        return Urgency.CRITICAL
    if current <= min_stock * Decimal("0.5"):
        return Urgency.HIGH
    if current <= min_stock:
        return Urgency.MEDIUM
    return Urgency.LOW


def _is_waste(movement) -> bool:
    return movement.movement_type == MovementType.WASTE or movement.reference_type == ReferenceType.WASTE


def _period_days(value, field: str = "days") -> int:
    days = to_id(value, field)
    if days < 1:
        raise ValidationError(f"{field} must be >= 1")
    return days


@dataclass
class ReorderSuggestion:
    ingredient_id: int
    ingredient_name: str
    unit: str
    current_stock: Decimal
    min_stock: Decimal
    max_stock: Decimal
    daily_consumption: Decimal
    reorder_point: Decimal
    suggested_quantity: Decimal
    estimated_cost: Decimal
    urgency: Urgency
    days_of_stock: Decimal | None = None

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "unit": self.unit,
            "current_stock": float(self.current_stock),
            "min_stock": float(self.min_stock),
            "max_stock": float(self.max_stock),
            "daily_consumption": float(self.daily_consumption),
            "reorder_point": float(self.reorder_point),
            "suggested_quantity": float(self.suggested_quantity),
            "estimated_cost": float(self.estimated_cost),
            "urgency": self.urgency.value,
            "days_of_stock": float(self.days_of_stock) if self.days_of_stock is not None else None,
        }


@dataclass
class LedgerReplay:
    ingredient_id: int
    stock: Decimal = ZERO
    batches: dict[int, Decimal] = field(default_factory=dict)
    movement_count: int = 0


@dataclass
class LedgerCheck:
    ingredient_id: int
    ingredient_name: str
    aggregate: Decimal
    batch_total: Decimal
    replayed: Decimal
    batch_mismatches: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.aggregate == self.batch_total == self.replayed and not self.batch_mismatches

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "ok": self.ok,
            "aggregate": float(self.aggregate),
            "batch_total": float(self.batch_total),
            "replayed": float(self.replayed),
            "batch_mismatches": list(self.batch_mismatches),
        }


class LedgerService:
    def __init__(self, repo, alert_service=None):
        self.repo = repo
        self.alerts = alert_service

    def movements(
        self,
        *,
        ingredient_id=None,
        reference=None,
        batch_id=None,
        movement_type=None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ):
        if ingredient_id is not None:
            ingredient_id = to_id(ingredient_id, "ingredient_id")
            if self.repo.get_ingredient(ingredient_id) is None:
                raise NotFound("Ingredient", ingredient_id)
        if movement_type is not None and not isinstance(movement_type, MovementType):
            try:
                movement_type = MovementType(movement_type)
            except ValueError:
                raise ValidationError(f"Unknown movement_type: {movement_type}")
        return self.repo.list_movements(
            ingredient_id=ingredient_id,
            reference=reference,
            batch_id=batch_id,
            movement_type=movement_type,
            since=since,
            until=until,
            limit=limit,
        )

    def replay(self, ingredient_id) -> LedgerReplay:
        """Derive stock and batch remainders from the movement log alone."""
        ingredient_id = to_id(ingredient_id, "ingredient_id")
        replay = LedgerReplay(ingredient_id=ingredient_id)
        for movement in self.repo.list_movements(ingredient_id=ingredient_id):
            signed = movement.signed_quantity
            replay.stock += signed
            if movement.batch_id is not None:
                replay.batches[movement.batch_id] = replay.batches.get(movement.batch_id, ZERO) + signed
            replay.movement_count += 1
        return replay

    def verify(self) -> list[LedgerCheck]:
        checks = []
        for ingredient in self.repo.list_ingredients(active_only=False):
            batches = self.repo.list_batches(ingredient.id)
            replay = self.replay(ingredient.id)
            check = LedgerCheck(
                ingredient_id=ingredient.id,
                ingredient_name=ingredient.name,
                aggregate=ingredient.current_stock,
                batch_total=sum((b.remaining_quantity for b in batches), ZERO),
                replayed=replay.stock,
                batch_mismatches=[
                    b.id for b in batches if replay.batches.get(b.id, ZERO) != b.remaining_quantity
                ],
            )
            if not check.ok:
                logger.error("ledger check failed for ingredient %s: %s", ingredient.id, check.to_dict())
            checks.append(check)
        return checks

    def valuation(self) -> dict:
        """Inventory value at batch cost: SUM(remaining * batch cost) per ingredient."""
        rows = []
        total = ZERO
        for ingredient in self.repo.list_ingredients(active_only=False):
            value = self._stock_value(ingredient)
            average = quantize_money(value / ingredient.current_stock) if ingredient.current_stock > ZERO else quantize_money(ZERO)
            rows.append(
                {
                    "ingredient_id": ingredient.id,
                    "ingredient_name": ingredient.name,
                    "unit": ingredient.unit,
                    "quantity": float(ingredient.current_stock),
                    "value": float(value),
                    "average_cost_per_unit": float(average),
                }
            )
            total += value
        return {"ingredients": rows, "total_value": float(quantize_money(total))}

    def _stock_value(self, ingredient) -> Decimal:
        return quantize_money(
            sum((b.remaining_quantity * b.cost_per_unit for b in self.repo.list_batches(ingredient.id)), ZERO)
        )

    def _stock_health(self) -> tuple[int, int]:
        """(low_stock, out_of_stock) counts over active ingredients."""
        low_stock = out_of_stock = 0
        for ingredient in self.repo.list_ingredients(active_only=True):
            if ingredient.current_stock <= ZERO:
                out_of_stock += 1
            elif ingredient.current_stock <= (ingredient.min_stock or ZERO):
                low_stock += 1
        return low_stock, out_of_stock

    def daily_stats(self, day: date | None = None) -> dict:
        day = day or utc_today()
        since = datetime.combine(day, time.min)
        until = since + timedelta(days=1)

        outgoing = [
            m for m in self.repo.list_movements(since=since, until=until) if m.movement_type in OUTGOING_TYPES
        ]
        order_moves = [m for m in outgoing if m.reference_type == ReferenceType.ORDER]
        waste_moves = [m for m in outgoing if _is_waste(m)]
        low_stock, out_of_stock = self._stock_health()

        stats = {
            "date": day.isoformat(),
            "deductions_count": len(order_moves),
            "orders_count": len({m.reference for m in order_moves}),
            "cost_deducted": float(quantize_money(sum((m.total_cost for m in order_moves), ZERO))),
            "waste_cost": float(quantize_money(sum((m.total_cost for m in waste_moves), ZERO))),
            "ingredients_affected": len({m.ingredient_id for m in outgoing}),
            "low_stock_count": low_stock,
            "out_of_stock_count": out_of_stock,
        }
        if self.alerts is not None:
            alerts = self.alerts.scan(today=day)
            stats["expiring_count"] = sum(1 for a in alerts if a.type == AlertType.EXPIRING_SOON)
            stats["expired_count"] = sum(1 for a in alerts if a.type == AlertType.EXPIRED)
        return stats

    # Planning

    def _period_movements(self, days: int, today: date) -> list:
        """Movements of the `days` calendar days ending with today (inclusive)."""
        until = datetime.combine(today + timedelta(days=1), time.min)
        return self.repo.list_movements(since=until - timedelta(days=days), until=until)

    @staticmethod
    def _net_consumption(movements) -> dict[int, dict[str, Decimal]]:
        totals: dict[int, dict[str, Decimal]] = {}
        for movement in movements:
            if movement.movement_type in OUTGOING_TYPES:
                sign = 1
            elif movement.reference_type == ReferenceType.REVERSAL:
                sign = -1
            else:
                continue
            row = totals.setdefault(movement.ingredient_id, {"quantity": ZERO, "value": ZERO})
            row["quantity"] += sign * movement.quantity
            row["value"] += sign * (movement.total_cost or ZERO)
        for row in totals.values():
            row["quantity"] = max(row["quantity"], ZERO)
            row["value"] = max(row["value"], ZERO)
        return totals

    def consumption(self, *, days=DEFAULT_CONSUMPTION_DAYS, today: date | None = None) -> dict[int, dict[str, Decimal]]:
        """
        Net quantity and value that left each ingredient over the period.

        Orders, manual deductions, waste and reconciliation shortfalls all
        count; stock given back by a reversal is subtracted again.
        """
        days = _period_days(days)
        return self._net_consumption(self._period_movements(days, today or utc_today()))

    def reorder_suggestions(
        self,
        lead_time_days=DEFAULT_LEAD_TIME_DAYS,
        safety_multiplier=DEFAULT_SAFETY_MULTIPLIER,
        *,
        days=DEFAULT_CONSUMPTION_DAYS,
        today: date | None = None,
    ) -> list[ReorderSuggestion]:
        lead_time_days = to_id(lead_time_days, "lead_time_days")
        if lead_time_days < 0:
            raise ValidationError("lead_time_days must be >= 0")
        safety_multiplier = to_decimal(safety_multiplier, "safety_multiplier")
        if safety_multiplier < 0:
            raise ValidationError("safety_multiplier must be >= 0")
        days = _period_days(days)
        consumed = self.consumption(days=days, today=today)

        suggestions = []
        for ingredient in self.repo.list_ingredients(active_only=True):
            current = ingredient.current_stock
            min_stock = ingredient.min_stock or ZERO
            max_stock = ingredient.max_stock or ZERO
            used = consumed.get(ingredient.id, {}).get("quantity", ZERO)
            rate = quantize_quantity(used / days)
            reorder_point = quantize_quantity(rate * lead_time_days + min_stock * safety_multiplier)
            if current > reorder_point:
                continue
            suggested = quantize_quantity(max(max_stock - current, reorder_point - current))
            if suggested <= ZERO:
                continue
            suggestions.append(
                ReorderSuggestion(
                    ingredient_id=ingredient.id,
                    ingredient_name=ingredient.name,
                    unit=ingredient.unit,
                    current_stock=current,
                    min_stock=min_stock,
                    max_stock=max_stock,
                    daily_consumption=rate,
                    reorder_point=reorder_point,
                    suggested_quantity=suggested,
                    estimated_cost=quantize_money(suggested * (ingredient.cost_per_unit or ZERO)),
                    urgency=_urgency(current, min_stock),
                    days_of_stock=(current / rate).quantize(DAYS_STEP, rounding=ROUND_HALF_UP) if rate > ZERO else None,
                )
            )
        suggestions.sort(key=lambda s: (s.urgency.rank, s.ingredient_id))
        logger.info("reorder check: %d ingredient(s) to order (lead time %d day(s))", len(suggestions), lead_time_days)
        return suggestions

    def analytics(self, *, days=DEFAULT_CONSUMPTION_DAYS, today: date | None = None, top=DEFAULT_TOP_CONSUMED) -> dict:
        """
        Period overview: stock health, waste, turnover and the most consumed ingredients.

        turnover_rate = consumed value / current stock value, annualized
        (x 365 / days). Zero when nothing is in stock.
        """
        days = _period_days(days)
        top = _period_days(top, "top")
        today = today or utc_today()

        movements = self._period_movements(days, today)
        consumed = self._net_consumption(movements)
        waste_value = quantize_money(
            sum((m.total_cost or ZERO for m in movements if m.movement_type in OUTGOING_TYPES and _is_waste(m)), ZERO)
        )

        ingredients = {i.id: i for i in self.repo.list_ingredients(active_only=False)}
        total_value = quantize_money(sum((self._stock_value(i) for i in ingredients.values()), ZERO))
        consumed_value = quantize_money(sum((row["value"] for row in consumed.values()), ZERO))
        turnover = ZERO
        if total_value > ZERO:
            turnover = (consumed_value / total_value * DAYS_PER_YEAR / days).quantize(RATE_STEP, rounding=ROUND_HALF_UP)

        ranked = sorted(
            ((iid, row) for iid, row in consumed.items() if row["quantity"] > ZERO and iid in ingredients),
            key=lambda item: (-item[1]["quantity"], item[0]),
        )[:top]
        low_stock, out_of_stock = self._stock_health()

        report = {
            "period_days": days,
            "since": (today - timedelta(days=days - 1)).isoformat(),
            "until": today.isoformat(),
            "total_value": float(total_value),
            "total_ingredients": sum(1 for i in ingredients.values() if i.is_active),
            "low_stock_count": low_stock,
            "out_of_stock_count": out_of_stock,
            "consumed_value": float(consumed_value),
            "waste_value": float(waste_value),
            "turnover_rate": float(turnover),
            "top_consumed": [
                {
                    "ingredient_id": iid,
                    "ingredient_name": ingredients[iid].name,
                    "unit": ingredients[iid].unit,
                    "quantity": float(row["quantity"]),
                    "value": float(quantize_money(row["value"])),
                    "daily_consumption": float(quantize_quantity(row["quantity"] / days)),
                }
                for iid, row in ranked
            ],
        }
        if self.alerts is not None:
            alerts = self.alerts.scan(today=today)
            report["expired_items"] = len({a.ingredient_id for a in alerts if a.type == AlertType.EXPIRED})
            report["expiring_soon"] = len({a.ingredient_id for a in alerts if a.type == AlertType.EXPIRING_SOON})
        return report

    def mark_expired_batches(self, today: date | None = None) -> list:
        """
        Flip active batches past their expiry to `expired`.

        Status only: expired stock stays counted and consumable until an
        operator writes it off.
        """
        today = today or utc_today()
        flipped = []
        for ingredient in self.repo.list_ingredients(active_only=False):
            candidates = [
                b.id for b in self.repo.list_batches(ingredient.id, available_only=True)
                if b.status == BatchStatus.ACTIVE and b.expiry_date is not None and b.expiry_date < today
            ]
            if not candidates:
                continue

            def _op(locked, candidates=candidates):
                changed = []
                now = utcnow()
                for batch_id in candidates:
                    batch = self.repo.get_batch(batch_id)
                    if batch.status == BatchStatus.ACTIVE and batch.remaining_quantity > ZERO:
                        batch.status = BatchStatus.EXPIRED
                        batch.updated_at = now
                        changed.append(batch)
                return changed

            flipped.extend(self.repo.run_locked([ingredient.id], _op))
        if flipped:
            logger.info("marked %d batch(es) expired", len(flipped))
        return flipped
