from __future__ import annotations

from decimal import Decimal

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_iso_date, to_utc_z
from .enums import BatchStatus, MovementType, ReferenceType, enum_values


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _enum_column(enum_cls, length: int, **kwargs):
    return db.Column(
        db.Enum(enum_cls, values_callable=enum_values, native_enum=False, length=length, validate_strings=True),
        **kwargs,
    )


class Ingredient(db.Model):
    """
    Ingredient master record.

    current_stock is a live aggregate: it always equals the sum of
    remaining_quantity over the ingredient's batches. The row doubles as the
    concurrency boundary for stock writes (SELECT ... FOR UPDATE plus the
    version_id optimistic-lock column).
    """
    __tablename__ = "ingredients"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_ingredients_name"),
        db.Index("ix_ingredients_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    unit = db.Column(db.String(20), nullable=False)

    current_stock = db.Column(db.Numeric(12, 3), nullable=False, default=Decimal("0"))
    min_stock = db.Column(db.Numeric(12, 3), nullable=False, default=Decimal("0"))
    max_stock = db.Column(db.Numeric(12, 3), nullable=False, default=Decimal("0"))

    # Baseline cost, used when stock enters without a purchase cost
    cost_per_unit = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Ingredient id={self.id} name={self.name!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "current_stock": _num(self.current_stock),
            "min_stock": _num(self.min_stock),
            "max_stock": _num(self.max_stock),
            "cost_per_unit": _num(self.cost_per_unit),
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockBatch(db.Model):
    """
    A quantity of one ingredient received at one cost with an optional expiry.

    IMMUTABLE except remaining_quantity and status. Batches are never deleted:
    consumed batches stay as cost history.

    status=consumed iff remaining_quantity == 0.
    FIFO order key: (received_date, id).
    """
    __tablename__ = "stock_batches"
    __table_args__ = (
        db.UniqueConstraint("ingredient_id", "batch_number", name="uq_stock_batches_ingredient_number"),
        db.CheckConstraint(
            "remaining_quantity >= 0 AND remaining_quantity <= initial_quantity",
            name="ck_stock_batches_remaining",
        ),
        db.Index("ix_stock_batches_fifo", "ingredient_id", "received_date", "id"),
        db.Index("ix_stock_batches_expiry", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False, index=True)
    batch_number = db.Column(db.String(50), nullable=False)

    initial_quantity = db.Column(db.Numeric(12, 3), nullable=False)
    remaining_quantity = db.Column(db.Numeric(12, 3), nullable=False)
    cost_per_unit = db.Column(db.Numeric(12, 2), nullable=False)

    received_date = db.Column(db.Date, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)

    status = _enum_column(BatchStatus, 16, nullable=False, default=BatchStatus.ACTIVE, index=True)

    supplier_name = db.Column(db.String(100), nullable=True)
    # Purchase order / reconciliation / reversal reference that created the batch
    reference = db.Column(db.String(64), nullable=True, index=True)
    notes = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    ingredient = db.relationship("Ingredient", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockBatch id={self.id} number={self.batch_number!r} "
            f"remaining={self.remaining_quantity} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "batch_number": self.batch_number,
            "initial_quantity": _num(self.initial_quantity),
            "remaining_quantity": _num(self.remaining_quantity),
            "cost_per_unit": _num(self.cost_per_unit),
            "received_date": to_iso_date(self.received_date),
            "expiry_date": to_iso_date(self.expiry_date),
            "status": self.status.value if self.status else None,
            "supplier_name": self.supplier_name,
            "reference": self.reference,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only ledger entry for a single quantity change.

    quantity is always positive; MovementType.direction gives the sign.
    Replaying the rows of an ingredient reproduces its current_stock and every
    batch remainder.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.Index("ix_stock_movements_ingredient_created", "ingredient_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference", "movement_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False, index=True)
    # Nullable for pure adjustments that do not touch a batch
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=True, index=True)

    movement_type = _enum_column(MovementType, 16, nullable=False, index=True)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)

    unit_cost = db.Column(db.Numeric(12, 2), nullable=False)
    total_cost = db.Column(db.Numeric(14, 2), nullable=False)

    # Ingredient stock snapshot around this movement
    stock_before = db.Column(db.Numeric(12, 3), nullable=True)
    stock_after = db.Column(db.Numeric(12, 3), nullable=True)

    reference = db.Column(db.String(64), nullable=True)
    reference_type = _enum_column(ReferenceType, 24, nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)

    performed_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    batch = db.relationship("StockBatch", backref=db.backref("movements", lazy=True))

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.movement_type.direction

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "batch_id": self.batch_id,
            "movement_type": self.movement_type.value,
            "quantity": _num(self.quantity),
            "unit_cost": _num(self.unit_cost),
            "total_cost": _num(self.total_cost),
            "stock_before": _num(self.stock_before),
            "stock_after": _num(self.stock_after),
            "reference": self.reference,
            "reference_type": self.reference_type.value if self.reference_type else None,
            "reason": self.reason,
            "performed_by": self.performed_by,
            "created_at": to_utc_z(self.created_at),
        }


class ProcessedDeduction(db.Model):
    """
    Idempotency record: reference X has been applied to ingredient Y.

    The unique pair makes a retried order (same reference) a no-op for every
    ingredient it already touched.
    """
    __tablename__ = "processed_deductions"
    __table_args__ = (
        db.UniqueConstraint("reference", "ingredient_id", name="uq_processed_deductions_reference_ingredient"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False, index=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False)
    reference_type = _enum_column(ReferenceType, 24, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


@event.listens_for(StockMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise ValueError("stock movements are append-only")


@event.listens_for(StockMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise ValueError("stock movements are append-only")
