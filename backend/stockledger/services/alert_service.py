# Overview: Alert Generator; evaluates stock levels and batch expiry into transient alerts.

"""
Alert rules (per ingredient, evaluated on fresh post-commit state):

- out_of_stock:   current_stock <= 0                          -> critical
- low_stock:      0 < current_stock <= min_stock              -> medium
                  (high when current_stock <= 50% of min_stock)
- overstock:      max_stock > 0 and current_stock > max_stock -> low
- expired:        live batch with expiry before today         -> critical
- expiring_soon:  live batch expiring within warning window   -> medium
                  (high within the critical window)
- batch_depleted: batch that reached zero in this operation   -> info

Every alert names the action_required; low_stock and out_of_stock also carry
a suggested_order_quantity (refill to max_stock, else 3 x min_stock).

"live batch" = not consumed and remaining_quantity > 0.

Alerts are never stored; callers dispatch them (notifications live elsewhere).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from ..models import BatchStatus
from ..time_utils import utc_today

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HALF = Decimal("0.5")
REFILL_FACTOR = Decimal("3")

DEFAULT_WARNING_DAYS = 7
DEFAULT_CRITICAL_DAYS = 3


class AlertType(str, enum.Enum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    OVERSTOCK = "overstock"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    BATCH_DEPLETED = "batch_depleted"


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


@dataclass(frozen=True)
class Alert:
    type: AlertType
    ingredient_id: int
    ingredient_name: str
    severity: Severity
    message: str
    data: dict = field(default_factory=dict)
    action_required: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "severity": self.severity.value,
            "message": self.message,
            "action_required": self.action_required,
            "data": dict(self.data),
        }


def sort_alerts(alerts: Iterable[Alert]) -> list[Alert]:
    return sorted(alerts, key=lambda a: (a.severity.rank, a.ingredient_id, a.type.value))


def suggested_order_quantity(ingredient) -> Decimal:
    """Refill up to max_stock, or to REFILL_FACTOR x min_stock when no maximum is set."""
    min_stock = ingredient.min_stock or ZERO
    max_stock = ingredient.max_stock or ZERO
    target = max_stock if max_stock > ZERO else min_stock * REFILL_FACTOR
    return max(target - ingredient.current_stock, ZERO)


def _stock_alert(ingredient) -> Alert | None:
    stock = ingredient.current_stock
    min_stock = ingredient.min_stock or ZERO
    max_stock = ingredient.max_stock or ZERO
    data = {
        "current_stock": float(stock),
        "min_stock": float(min_stock),
        "max_stock": float(max_stock),
        "unit": ingredient.unit,
    }

    if stock <= ZERO:
        return Alert(
            type=AlertType.OUT_OF_STOCK,
            ingredient_id=ingredient.id,
            ingredient_name=ingredient.name,
            severity=Severity.CRITICAL,
            message=f"{ingredient.name} is out of stock",
            data={**data, "suggested_order_quantity": float(suggested_order_quantity(ingredient))},
            action_required="Urgent restock needed",
        )
    if stock <= min_stock:
        severity = Severity.HIGH if stock <= min_stock * HALF else Severity.MEDIUM
        return Alert(
            type=AlertType.LOW_STOCK,
            ingredient_id=ingredient.id,
            ingredient_name=ingredient.name,
            severity=severity,
            message=f"{ingredient.name} is low: {stock} {ingredient.unit} left (minimum {min_stock})",
            data={**data, "suggested_order_quantity": float(suggested_order_quantity(ingredient))},
            action_required="Create purchase order",
        )
    if max_stock > ZERO and stock > max_stock:
        return Alert(
            type=AlertType.OVERSTOCK,
            ingredient_id=ingredient.id,
            ingredient_name=ingredient.name,
            severity=Severity.LOW,
            message=f"{ingredient.name} is above maximum: {stock} {ingredient.unit} (maximum {max_stock})",
            data=data,
            action_required="Hold purchases until stock is back under maximum",
        )
    return None


def _batch_data(batch) -> dict:
    return {
        "batch_id": batch.id,
        "batch_number": batch.batch_number,
        "remaining_quantity": float(batch.remaining_quantity),
        "expiry_date": batch.expiry_date.isoformat() if batch.expiry_date else None,
    }


def evaluate_ingredient(
    ingredient,
    batches: Iterable,
    *,
    today: date | None = None,
    depleted_batch_ids: Iterable[int] = (),
    warning_days: int = DEFAULT_WARNING_DAYS,
    critical_days: int = DEFAULT_CRITICAL_DAYS,
) -> list[Alert]:
    """Pure rule evaluation for one ingredient and its batches."""
    today = today or utc_today()
    depleted = set(depleted_batch_ids)
    alerts: list[Alert] = []

    stock_alert = _stock_alert(ingredient)
    if stock_alert is not None:
        alerts.append(stock_alert)

    for batch in batches:
        if batch.id in depleted:
            alerts.append(
                Alert(
                    type=AlertType.BATCH_DEPLETED,
                    ingredient_id=ingredient.id,
                    ingredient_name=ingredient.name,
                    severity=Severity.INFO,
                    message=f"Batch {batch.batch_number} of {ingredient.name} is used up",
                    data=_batch_data(batch),
                    action_required="Archive empty batch",
                )
            )
            continue

        if batch.status == BatchStatus.CONSUMED or batch.remaining_quantity <= ZERO:
            continue
        if batch.expiry_date is None:
            continue

        days_left = (batch.expiry_date - today).days
        if days_left < 0:
            alerts.append(
                Alert(
                    type=AlertType.EXPIRED,
                    ingredient_id=ingredient.id,
                    ingredient_name=ingredient.name,
                    severity=Severity.CRITICAL,
                    message=(
                        f"Batch {batch.batch_number} of {ingredient.name} expired on "
                        f"{batch.expiry_date.isoformat()}"
                    ),
                    data={**_batch_data(batch), "days_until_expiry": days_left},
                    action_required="Write off the batch or use it immediately",
                )
            )
        elif days_left <= warning_days:
            alerts.append(
                Alert(
                    type=AlertType.EXPIRING_SOON,
                    ingredient_id=ingredient.id,
                    ingredient_name=ingredient.name,
                    severity=Severity.HIGH if days_left <= critical_days else Severity.MEDIUM,
                    message=f"Batch {batch.batch_number} of {ingredient.name} expires in {days_left} day(s)",
                    data={**_batch_data(batch), "days_until_expiry": days_left},
                    action_required="Use batch soon or mark as waste",
                )
            )

    return alerts


class AlertService:
    """Reads fresh state through the repository and applies the rules."""

    def __init__(self, repo, *, warning_days: int = DEFAULT_WARNING_DAYS, critical_days: int = DEFAULT_CRITICAL_DAYS):
        self.repo = repo
        self.warning_days = warning_days
        self.critical_days = critical_days

    def evaluate(self, ingredient, *, today: date | None = None, depleted_batch_ids: Iterable[int] = ()) -> list[Alert]:
        return evaluate_ingredient(
            ingredient,
            self.repo.list_batches(ingredient.id),
            today=today,
            depleted_batch_ids=depleted_batch_ids,
            warning_days=self.warning_days,
            critical_days=self.critical_days,
        )

    def for_ingredients(
        self,
        ingredient_ids: Iterable[int],
        *,
        depleted_batch_ids: Iterable[int] = (),
        today: date | None = None,
    ) -> list[Alert]:
        depleted = set(depleted_batch_ids)
        alerts: list[Alert] = []
        for ingredient_id in sorted(set(ingredient_ids)):
            ingredient = self.repo.get_ingredient(ingredient_id)
            if ingredient is None:
                continue
            alerts.extend(self.evaluate(ingredient, today=today, depleted_batch_ids=depleted))
        alerts = sort_alerts(alerts)
        self._log(alerts)
        return alerts

    def scan(self, *, today: date | None = None, min_severity: Severity | None = None) -> list[Alert]:
        """Evaluate every active ingredient (dashboard / scheduled check)."""
        alerts: list[Alert] = []
        for ingredient in self.repo.list_ingredients(active_only=True):
            alerts.extend(self.evaluate(ingredient, today=today))
        if min_severity is not None:
            alerts = [a for a in alerts if a.severity.rank <= min_severity.rank]
        return sort_alerts(alerts)

    @staticmethod
    def _log(alerts: list[Alert]) -> None:
        for alert in alerts:
            if alert.severity in (Severity.CRITICAL, Severity.HIGH):
                logger.warning("stock alert %s [%s]: %s", alert.type.value, alert.severity.value, alert.message)
