from __future__ import annotations
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from stockledger.errors import ErrorKind, StockError
from stockledger.time_utils import parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta


QUANTITY_STEP = Decimal("0.001")
MONEY_STEP = Decimal("0.01")

# Largest quantity / unit cost accepted from callers (NUMERIC(12, x) columns)
MAX_QUANTITY = Decimal("999999999.999")
MAX_UNIT_COST = Decimal("9999999999.99")


class ValidationError(StockError, ValueError):
    """400-level input problem."""

    kind = ErrorKind.VALIDATION


def quantize_quantity(value: Decimal) -> Decimal:
    return value.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def quantize_money(value: Decimal) -> Decimal:
    # nearest-cent rounding (half-up)
    return value.quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Coerce caller input to Decimal.

    Floats go through str() so 0.1 stays 0.1; booleans, NaN and infinities
    are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a number")
        try:
            result = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number")
    else:
        raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def to_quantity(value: Any, field: str = "quantity", *, allow_zero: bool = False, allow_negative: bool = False) -> Decimal:
    qty = quantize_quantity(to_decimal(value, field))
    if abs(qty) > MAX_QUANTITY:
        raise ValidationError(f"{field} exceeds {MAX_QUANTITY}")
    if qty < 0 and not allow_negative:
        raise ValidationError(f"{field} must be >= 0" if allow_zero else f"{field} must be > 0")
    if qty == 0 and not allow_zero:
        raise ValidationError(f"{field} must be non-zero" if allow_negative else f"{field} must be > 0")
    return qty


def to_money(value: Any, field: str = "unit_cost") -> Decimal:
    amount = quantize_money(to_decimal(value, field))
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_UNIT_COST:
        raise ValidationError(f"{field} exceeds {MAX_UNIT_COST}")
    return amount


def to_date(value: Any, field: str) -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 date")


def to_id(value: Any, field: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer")


def to_bool(value: Any, field: str, *, default: bool = False) -> bool:
    """JSON booleans, or the strings true/false/1/0. Anything else is rejected."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise ValidationError(f"{field} must be true or false")


def require_text(value: Any, field: str, *, max_length: int = 255) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def optional_text(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    return require_text(value, field, max_length=max_length)


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Quantities (scale 3) and money (scale 2); thresholds are never negative
    if isinstance(coltype, Numeric):
        number = to_decimal(value, col.key)
        if number < 0:
            raise ValidationError(f"{col.key} must be >= 0")
        if coltype.scale == 2:
            return to_money(number, col.key)
        return to_quantity(number, col.key, allow_zero=True)

    if isinstance(coltype, Boolean):
        return to_bool(value, col.key)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    raise ValidationError(f"{col.key} cannot be set through this endpoint")


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_ingredient(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    min_stock = patch.get("min_stock")
    max_stock = patch.get("max_stock")
    if min_stock is not None and max_stock is not None and max_stock > 0 and max_stock < min_stock:
        raise ValidationError("max_stock must be >= min_stock")
