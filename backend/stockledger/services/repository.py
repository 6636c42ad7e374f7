# Overview: Persistence seam for the stock ledger; the SQLAlchemy-backed repository.

"""
Stock Repository

Every stock write goes through StockRepository.run_locked(ingredient_ids, op):

- the ingredient rows are locked in ascending id order (no lock cycles),
- op(locked) runs with {ingredient_id: Ingredient} for the rows that exist,
- the transaction commits when op returns and rolls back when it raises.

Nested run_locked calls are refused. Reads outside run_locked see committed
state and take no locks (preview, alerts, reports).

SqlAlchemyStockRepository is the production implementation;
memory_repository.InMemoryStockRepository keeps the same contract for tests
and embedded use.
"""

from __future__ import annotations

import abc
import threading
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from sqlalchemy.exc import IntegrityError

from ..models import Ingredient, MovementType, ProcessedDeduction, ReferenceType, StockBatch, StockMovement
from ..time_utils import utcnow
from ..validation import ValidationError
from .concurrency import lock_for_update, run_with_retry

T = TypeVar("T")

LockedOp = Callable[[dict], T]


class StockRepository(abc.ABC):
    """Storage contract used by every stock service."""

    @abc.abstractmethod
    def run_locked(self, ingredient_ids: Iterable[int], op: LockedOp) -> T:
        ...

    # Ingredients
    @abc.abstractmethod
    def get_ingredient(self, ingredient_id: int) -> Ingredient | None:
        ...

    @abc.abstractmethod
    def find_ingredient_by_name(self, name: str) -> Ingredient | None:
        ...

    @abc.abstractmethod
    def list_ingredients(self, *, active_only: bool = True) -> list[Ingredient]:
        ...

    @abc.abstractmethod
    def create_ingredient(self, ingredient: Ingredient) -> Ingredient:
        """Persist a new ingredient immediately (outside run_locked)."""

    # Batches
    @abc.abstractmethod
    def get_batch(self, batch_id: int) -> StockBatch | None:
        ...

    @abc.abstractmethod
    def list_batches(self, ingredient_id: int, *, available_only: bool = False) -> list[StockBatch]:
        """Batches of one ingredient in FIFO order (received_date, id)."""

    @abc.abstractmethod
    def batch_number_exists(self, ingredient_id: int, batch_number: str) -> bool:
        ...

    @abc.abstractmethod
    def count_batches_with_prefix(self, ingredient_id: int, prefix: str) -> int:
        ...

    @abc.abstractmethod
    def add_batch(self, batch: StockBatch) -> StockBatch:
        ...

    # Movements
    @abc.abstractmethod
    def add_movement(self, movement: StockMovement) -> StockMovement:
        ...

    @abc.abstractmethod
    def list_movements(
        self,
        *,
        ingredient_id: int | None = None,
        reference: str | None = None,
        batch_id: int | None = None,
        movement_type: MovementType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[StockMovement]:
        """Movements in append order (id ascending)."""

    # Idempotency
    @abc.abstractmethod
    def is_processed(self, reference: str, ingredient_id: int) -> bool:
        ...

    @abc.abstractmethod
    def mark_processed(self, reference: str, ingredient_id: int, reference_type: ReferenceType) -> None:
        ...

    @abc.abstractmethod
    def processed_ingredients(self, reference: str) -> set[int]:
        ...


class SqlAlchemyStockRepository(StockRepository):
    """
    Repository over a SQLAlchemy session.

    Locks are SELECT ... FOR UPDATE on the ingredient rows; the version_id
    columns on ingredients and batches catch lost updates on backends that
    ignore FOR UPDATE (SQLite). The whole locked cycle is retried on
    concurrency failures.
    """

    def __init__(self, session, *, attempts: int = 3, backoff: float = 0.1):
        self.session = session
        self.attempts = attempts
        self.backoff = backoff
        self._state = threading.local()

    def run_locked(self, ingredient_ids, op):
        ids = sorted({int(i) for i in ingredient_ids})
        if getattr(self._state, "active", False):
            raise RuntimeError("nested stock transactions are not supported")

        def _op():
            self._state.active = True
            try:
                locked = {}
                for ingredient_id in ids:
                    query = self.session.query(Ingredient).filter(Ingredient.id == ingredient_id)
                    ingredient = lock_for_update(query).populate_existing().first()
                    if ingredient is not None:
                        locked[ingredient_id] = ingredient
                result = op(locked)
                self.session.commit()
                return result
            except Exception:
                self.session.rollback()
                raise
            finally:
                self._state.active = False

        return run_with_retry(_op, session=self.session, attempts=self.attempts, backoff_base=self.backoff)

    def get_ingredient(self, ingredient_id):
        return self.session.get(Ingredient, ingredient_id)

    def find_ingredient_by_name(self, name):
        return self.session.query(Ingredient).filter(Ingredient.name == name).first()

    def list_ingredients(self, *, active_only=True):
        query = self.session.query(Ingredient)
        if active_only:
            query = query.filter(Ingredient.is_active.is_(True))
        return query.order_by(Ingredient.id.asc()).all()

    def create_ingredient(self, ingredient):
        self.session.add(ingredient)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ValidationError(f"Ingredient '{ingredient.name}' already exists")
        return ingredient

    def get_batch(self, batch_id):
        return self.session.get(StockBatch, batch_id, populate_existing=True)

    def list_batches(self, ingredient_id, *, available_only=False):
        query = self.session.query(StockBatch).filter(StockBatch.ingredient_id == ingredient_id)
        if available_only:
            query = query.filter(StockBatch.remaining_quantity > 0)
        return (
            query.order_by(StockBatch.received_date.asc(), StockBatch.id.asc())
            .populate_existing()
            .all()
        )

    def batch_number_exists(self, ingredient_id, batch_number):
        return (
            self.session.query(StockBatch.id)
            .filter(StockBatch.ingredient_id == ingredient_id, StockBatch.batch_number == batch_number)
            .first()
            is not None
        )

    def count_batches_with_prefix(self, ingredient_id, prefix):
        return (
            self.session.query(StockBatch)
            .filter(StockBatch.ingredient_id == ingredient_id, StockBatch.batch_number.like(f"{prefix}%"))
            .count()
        )

    def add_batch(self, batch):
        self.session.add(batch)
        self.session.flush()
        return batch

    def add_movement(self, movement):
        self.session.add(movement)
        self.session.flush()
        return movement

    def list_movements(
        self,
        *,
        ingredient_id=None,
        reference=None,
        batch_id=None,
        movement_type=None,
        since=None,
        until=None,
        limit=None,
    ):
        query = self.session.query(StockMovement)
        if ingredient_id is not None:
            query = query.filter(StockMovement.ingredient_id == ingredient_id)
        if reference is not None:
            query = query.filter(StockMovement.reference == reference)
        if batch_id is not None:
            query = query.filter(StockMovement.batch_id == batch_id)
        if movement_type is not None:
            query = query.filter(StockMovement.movement_type == movement_type)
        if since is not None:
            query = query.filter(StockMovement.created_at >= since)
        if until is not None:
            query = query.filter(StockMovement.created_at < until)
        query = query.order_by(StockMovement.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def is_processed(self, reference, ingredient_id):
        return (
            self.session.query(ProcessedDeduction.id)
            .filter_by(reference=reference, ingredient_id=ingredient_id)
            .first()
            is not None
        )

    def mark_processed(self, reference, ingredient_id, reference_type):
        self.session.add(
            ProcessedDeduction(
                reference=reference,
                ingredient_id=ingredient_id,
                reference_type=reference_type,
                created_at=utcnow(),
            )
        )

    def processed_ingredients(self, reference):
        rows = (
            self.session.query(ProcessedDeduction.ingredient_id)
            .filter(ProcessedDeduction.reference == reference)
            .all()
        )
        return {row[0] for row in rows}
