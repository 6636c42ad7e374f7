from __future__ import annotations

import enum


class BatchStatus(str, enum.Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class MovementType(str, enum.Enum):
    STOCK_IN = "stock_in"
    STOCK_OUT = "stock_out"
    WASTE = "waste"
    ADJUSTMENT = "adjustment"

    @property
    def direction(self) -> int:
        """+1 when the movement adds stock, -1 when it removes it."""
        if self is MovementType.STOCK_IN:
            return 1
        if self in (MovementType.STOCK_OUT, MovementType.WASTE, MovementType.ADJUSTMENT):
            return -1
        raise ValueError(f"unhandled movement type: {self}")


class ReferenceType(str, enum.Enum):
    ORDER = "order"
    PURCHASE = "purchase"
    MANUAL = "manual"
    WASTE = "waste"
    RECONCILIATION = "reconciliation"
    REVERSAL = "reversal"
    EXPIRY = "expiry"


def enum_values(enum_cls) -> list[str]:
    """Persist enum values ("stock_in") rather than member names ("STOCK_IN")."""
    return [member.value for member in enum_cls]
