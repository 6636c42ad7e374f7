"""
Stock error taxonomy.

Every failure the ledger can report is a StockError carrying an ErrorKind.
An order deduction runs in one transaction and reports item-level kinds (not
found, insufficient stock, validation, already processed) per ingredient.
Receipts, adjustments and reconciliations commit item by item, so any
StockError is reported on its own line, including persistence and conflict
failures. Ledger invariant failures always abort.
"""
from __future__ import annotations

import enum
from decimal import Decimal


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    INSUFFICIENT_STOCK = "insufficient_stock"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    PERSISTENCE = "persistence_error"
    LEDGER_INVARIANT = "ledger_invariant"


def _with_unit(quantity, unit: str) -> str:
    return f"{quantity} {unit}" if unit else f"{quantity}"


class StockError(Exception):
    """Base class for stock ledger failures."""

    kind: ErrorKind = ErrorKind.PERSISTENCE

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": str(self)}


class InsufficientStock(StockError):
    """Raised when batches cannot cover a deduction and force was not set."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, ingredient_id: int, ingredient_name: str, needed: Decimal, available: Decimal, unit: str = ""):
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        self.needed = needed
        self.available = available
        self.shortage = needed - available
        self.unit = unit
        super().__init__(
            f"Insufficient stock for '{ingredient_name}': "
            f"need {_with_unit(needed, unit)}, have {_with_unit(available, unit)}"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "ingredient_id": self.ingredient_id,
            "needed": float(self.needed),
            "available": float(self.available),
            "shortage": float(self.shortage),
        }


class NotFound(StockError):
    """Raised when an ingredient or batch does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AlreadyProcessed(StockError):
    """Raised when a reference has already been applied."""

    kind = ErrorKind.ALREADY_PROCESSED

    def __init__(self, reference: str, ingredient_id: int | None = None):
        self.reference = reference
        self.ingredient_id = ingredient_id
        if ingredient_id is None:
            message = f"Stock already processed for reference {reference}"
        else:
            message = f"Stock already processed for reference {reference} (ingredient {ingredient_id})"
        super().__init__(message)


class ConcurrencyConflict(StockError):
    """Stale row or lock contention that outlived the retry budget."""

    kind = ErrorKind.CONCURRENCY_CONFLICT


class PersistenceError(StockError):
    """Database failure that outlived the retry budget."""

    kind = ErrorKind.PERSISTENCE


class LedgerInvariantError(StockError):
    """Ingredient aggregate disagrees with the sum of its batch remainders."""

    kind = ErrorKind.LEDGER_INVARIANT

    def __init__(self, ingredient_id: int, aggregate: Decimal, batch_total: Decimal):
        self.ingredient_id = ingredient_id
        self.aggregate = aggregate
        self.batch_total = batch_total
        super().__init__(
            f"Ingredient {ingredient_id} stock {aggregate} does not match batch total {batch_total}"
        )
