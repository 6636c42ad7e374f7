# Overview: In-memory implementation of the stock repository (tests, embedded use).

"""
InMemoryStockRepository

Holds transient model instances in dicts. run_locked takes one lock per
ingredient in ascending id order and keeps a per-thread journal; when op
raises, the journal puts every touched ingredient and batch back the way it
was and drops the rows added inside the transaction.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import ExitStack

from ..models import ProcessedDeduction
from ..time_utils import utcnow
from ..validation import ValidationError
from .repository import StockRepository

_INGREDIENT_FIELDS = ("current_stock", "version_id", "updated_at")
_BATCH_FIELDS = ("remaining_quantity", "status", "version_id", "updated_at")


class _Journal:
    def __init__(self):
        self.snapshots: list[tuple[object, dict]] = []
        self.batches: list = []
        self.movements: list = []
        self.processed: list[tuple[str, int]] = []


class InMemoryStockRepository(StockRepository):
    def __init__(self):
        self._store_lock = threading.RLock()
        self._locks: dict[int, threading.Lock] = {}
        self._local = threading.local()

        self._ingredients: dict = {}
        self._batches: dict = {}
        self._movements: list = []
        self._processed: dict[tuple[str, int], ProcessedDeduction] = {}

        self._ingredient_ids = itertools.count(1)
        self._batch_ids = itertools.count(1)
        self._movement_ids = itertools.count(1)
        self._processed_ids = itertools.count(1)

    # Transactions

    def _lock_for(self, ingredient_id: int) -> threading.Lock:
        with self._store_lock:
            return self._locks.setdefault(ingredient_id, threading.Lock())

    def _journal(self) -> _Journal | None:
        return getattr(self._local, "journal", None)

    def run_locked(self, ingredient_ids, op):
        ids = sorted({int(i) for i in ingredient_ids})
        if self._journal() is not None:
            raise RuntimeError("nested stock transactions are not supported")

        with ExitStack() as stack:
            for ingredient_id in ids:
                stack.enter_context(self._lock_for(ingredient_id))

            journal = _Journal()
            locked = {}
            for ingredient_id in ids:
                ingredient = self._ingredients.get(ingredient_id)
                if ingredient is None:
                    continue
                locked[ingredient_id] = ingredient
                journal.snapshots.append((ingredient, self._capture(ingredient, _INGREDIENT_FIELDS)))
                for batch in self.list_batches(ingredient_id):
                    journal.snapshots.append((batch, self._capture(batch, _BATCH_FIELDS)))

            self._local.journal = journal
            try:
                result = op(locked)
            except Exception:
                self._rollback(journal)
                raise
            finally:
                self._local.journal = None
            self._bump_versions(journal)
            return result

    @staticmethod
    def _capture(obj, fields) -> dict:
        return {field: getattr(obj, field) for field in fields}

    @staticmethod
    def _bump_versions(journal: _Journal) -> None:
        for obj, saved in journal.snapshots:
            if any(getattr(obj, field) != value for field, value in saved.items()):
                obj.version_id = (saved["version_id"] or 0) + 1

    def _rollback(self, journal: _Journal) -> None:
        with self._store_lock:
            for obj, saved in journal.snapshots:
                for field, value in saved.items():
                    setattr(obj, field, value)
            for batch in journal.batches:
                self._batches.pop(batch.id, None)
            added = {id(movement) for movement in journal.movements}
            self._movements = [m for m in self._movements if id(m) not in added]
            for key in journal.processed:
                self._processed.pop(key, None)

    # Ingredients

    def get_ingredient(self, ingredient_id):
        return self._ingredients.get(ingredient_id)

    def find_ingredient_by_name(self, name):
        with self._store_lock:
            for ingredient in self._ingredients.values():
                if ingredient.name == name:
                    return ingredient
        return None

    def list_ingredients(self, *, active_only=True):
        with self._store_lock:
            rows = sorted(self._ingredients.values(), key=lambda i: i.id)
        if active_only:
            rows = [i for i in rows if i.is_active]
        return rows

    def create_ingredient(self, ingredient):
        with self._store_lock:
            if self.find_ingredient_by_name(ingredient.name) is not None:
                raise ValidationError(f"Ingredient '{ingredient.name}' already exists")
            now = utcnow()
            ingredient.id = next(self._ingredient_ids)
            ingredient.version_id = 1
            ingredient.created_at = ingredient.created_at or now
            ingredient.updated_at = ingredient.updated_at or now
            self._ingredients[ingredient.id] = ingredient
        return ingredient

    # Batches

    def get_batch(self, batch_id):
        return self._batches.get(batch_id)

    def list_batches(self, ingredient_id, *, available_only=False):
        with self._store_lock:
            rows = [b for b in self._batches.values() if b.ingredient_id == ingredient_id]
        if available_only:
            rows = [b for b in rows if b.remaining_quantity > 0]
        return sorted(rows, key=lambda b: (b.received_date, b.id))

    def batch_number_exists(self, ingredient_id, batch_number):
        with self._store_lock:
            return any(
                b.ingredient_id == ingredient_id and b.batch_number == batch_number
                for b in self._batches.values()
            )

    def count_batches_with_prefix(self, ingredient_id, prefix):
        with self._store_lock:
            return sum(
                1
                for b in self._batches.values()
                if b.ingredient_id == ingredient_id and b.batch_number.startswith(prefix)
            )

    def _require_journal(self) -> _Journal:
        journal = self._journal()
        if journal is None:
            raise RuntimeError("stock writes must run inside run_locked")
        return journal

    def add_batch(self, batch):
        journal = self._require_journal()
        with self._store_lock:
            now = utcnow()
            batch.id = next(self._batch_ids)
            batch.version_id = 1
            batch.created_at = batch.created_at or now
            batch.updated_at = batch.updated_at or now
            self._batches[batch.id] = batch
        journal.batches.append(batch)
        return batch

    # Movements

    def add_movement(self, movement):
        journal = self._require_journal()
        with self._store_lock:
            movement.id = next(self._movement_ids)
            movement.created_at = movement.created_at or utcnow()
            self._movements.append(movement)
        journal.movements.append(movement)
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
        with self._store_lock:
            rows = list(self._movements)
        if ingredient_id is not None:
            rows = [m for m in rows if m.ingredient_id == ingredient_id]
        if reference is not None:
            rows = [m for m in rows if m.reference == reference]
        if batch_id is not None:
            rows = [m for m in rows if m.batch_id == batch_id]
        if movement_type is not None:
            rows = [m for m in rows if m.movement_type == movement_type]
        if since is not None:
            rows = [m for m in rows if m.created_at >= since]
        if until is not None:
            rows = [m for m in rows if m.created_at < until]
        rows.sort(key=lambda m: m.id)
        if limit is not None:
            rows = rows[:limit]
        return rows

    # Idempotency

    def is_processed(self, reference, ingredient_id):
        return (reference, ingredient_id) in self._processed

    def mark_processed(self, reference, ingredient_id, reference_type):
        journal = self._require_journal()
        key = (reference, ingredient_id)
        with self._store_lock:
            if key in self._processed:
                raise ValidationError(f"Reference {reference} already recorded for ingredient {ingredient_id}")
            self._processed[key] = ProcessedDeduction(
                id=next(self._processed_ids),
                reference=reference,
                ingredient_id=ingredient_id,
                reference_type=reference_type,
                created_at=utcnow(),
            )
        journal.processed.append(key)

    def processed_ingredients(self, reference):
        with self._store_lock:
            return {iid for (ref, iid) in self._processed if ref == reference}
