# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

# backend/stockledger/routes/stock.py
"""
Stock ledger API routes.

Thin layer: parse the request, call one stock service, serialize the result.
Authentication/authorization is handled in front of this service.

Error mapping (body: {"error": message, "kind": ErrorKind, ...}):
- ValidationError                                   -> 400
- NotFound                                          -> 404
- InsufficientStock / AlreadyProcessed / Conflict   -> 409
- PersistenceError                                  -> 503
- anything else                                     -> 500 (logged)
"""

from decimal import Decimal

from flask import Blueprint, current_app, jsonify, request

from ..errors import ErrorKind, StockError
from ..extensions import db
from ..services import build_stock_services
from ..services.alert_service import Severity
from ..services.ledger_service import (
    DEFAULT_CONSUMPTION_DAYS,
    DEFAULT_LEAD_TIME_DAYS,
    DEFAULT_SAFETY_MULTIPLIER,
    DEFAULT_TOP_CONSUMED,
)
from ..services.repository import SqlAlchemyStockRepository
from ..time_utils import parse_iso_datetime
from ..validation import ValidationError, quantize_money, to_bool, to_date, to_id

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.ALREADY_PROCESSED: 409,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.PERSISTENCE: 503,
    ErrorKind.LEDGER_INVARIANT: 500,
}


def _services():
    config = current_app.config
    repository = SqlAlchemyStockRepository(
        db.session,
        attempts=int(config.get("STOCK_RETRY_ATTEMPTS", 3)),
        backoff=float(config.get("STOCK_RETRY_BACKOFF", 0.1)),
    )
    return build_stock_services(repository, config)


def _error_response(exc: StockError):
    db.session.rollback()
    status = STATUS_BY_KIND[exc.kind]
    if status >= 500:
        current_app.logger.error("stock request failed: %s", exc)
    body = exc.to_dict()
    body["error"] = body.pop("message")
    return jsonify(body), status


def _internal_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _query_datetime(name: str):
    raw = request.args.get(name)
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def _query_limit(default: int = 200, maximum: int = 1000) -> int:
    raw = request.args.get("limit")
    if raw is None:
        return default
    limit = to_id(raw, "limit")
    if limit < 1 or limit > maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}")
    return limit


def _active_only() -> bool:
    return request.args.get("include_inactive", "").lower() not in ("1", "true", "yes")


# Orders


@stock_bp.post("/orders/<reference>/deduct")
def deduct_order_route(reference: str):
    """
    Deduct every ingredient of a confirmed order.

    Body: {"requirements": [{"ingredient_id", "quantity"}], "policy"?, "batch_ids"?,
           "force"?, "performed_by"?}
    """
    try:
        payload = _payload()
        result = _services().deductions.deduct_for_order(
            reference,
            payload.get("requirements"),
            policy=payload.get("policy"),
            batch_ids=payload.get("batch_ids"),
            force=to_bool(payload.get("force"), "force"),
            performed_by=payload.get("performed_by"),
        )
        return jsonify(result.to_dict()), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to deduct order stock")


@stock_bp.post("/orders/<reference>/reverse")
def reverse_order_route(reference: str):
    """Compensating stock-in for a voided order."""
    try:
        payload = _payload()
        result = _services().adjustments.reverse_deduction(
            reference,
            reason=payload.get("reason"),
            performed_by=payload.get("performed_by"),
        )
        return jsonify(result.to_dict()), 201
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to reverse order stock")


@stock_bp.post("/preview")
def preview_route():
    """Dry-run allocation: no locks, no writes."""
    try:
        payload = _payload()
        result = _services().deductions.preview(
            payload.get("requirements"),
            policy=payload.get("policy"),
            batch_ids=payload.get("batch_ids"),
        )
        return jsonify(result.to_dict()), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to preview stock deduction")


# Operator actions


@stock_bp.post("/adjustments")
def adjustments_route():
    try:
        payload = _payload()
        result = _services().adjustments.apply(
            payload.get("adjustments"),
            performed_by=payload.get("performed_by"),
        )
        return jsonify(result.to_dict()), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to apply stock adjustments")


@stock_bp.post("/reconciliations")
def reconciliations_route():
    try:
        payload = _payload()
        result = _services().reconciliation.reconcile(
            payload.get("items"),
            performed_by=payload.get("performed_by"),
            notes=payload.get("notes"),
            reference=payload.get("reference"),
        )
        return jsonify(result.to_dict()), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to reconcile stock")


@stock_bp.post("/batches")
def receive_batch_route():
    """
    Receive a purchase as a new batch.

    Body: {"ingredient_id", "quantity", "unit_cost"?, "expiry_date"?, "batch_number"?,
           "received_date"?, "supplier_name"?, "reference"?, "notes"?, "performed_by"?}
    """
    try:
        payload = _payload()
        received = _services().receiving.receive_detailed(
            payload.get("ingredient_id"),
            payload.get("quantity"),
            unit_cost=payload.get("unit_cost"),
            expiry_date=payload.get("expiry_date"),
            batch_number=payload.get("batch_number"),
            received_date=payload.get("received_date"),
            supplier_name=payload.get("supplier_name"),
            reference=payload.get("reference"),
            notes=payload.get("notes"),
            performed_by=payload.get("performed_by"),
        )
        return jsonify(received.to_dict()), 201
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to receive batch")


@stock_bp.post("/batches/<int:batch_id>/write-off")
def write_off_batch_route(batch_id: int):
    try:
        payload = _payload()
        deduction = _services().adjustments.write_off_batch(
            batch_id,
            reason=payload.get("reason"),
            performed_by=payload.get("performed_by"),
        )
        return jsonify({"write_off": deduction.to_dict()}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to write off batch")


# Reads


@stock_bp.post("/ingredients")
def create_ingredient_route():
    try:
        ingredient = _services().ingredients.create(_payload())
        return jsonify({"ingredient": ingredient.to_dict()}), 201
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to create ingredient")


@stock_bp.patch("/ingredients/<int:ingredient_id>")
def update_ingredient_route(ingredient_id: int):
    try:
        ingredient = _services().ingredients.update(ingredient_id, _payload())
        return jsonify({"ingredient": ingredient.to_dict()}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to update ingredient")


@stock_bp.get("/ingredients")
def list_ingredients_route():
    try:
        ingredients = _services().ingredients.list(active_only=_active_only())
        return jsonify({"ingredients": [i.to_dict() for i in ingredients]}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list ingredients")


@stock_bp.get("/ingredients/<int:ingredient_id>")
def get_ingredient_route(ingredient_id: int):
    try:
        return jsonify({"ingredient": _services().ingredients.get_summary(ingredient_id)}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to load ingredient")


@stock_bp.get("/ingredients/<int:ingredient_id>/batches")
def list_batches_route(ingredient_id: int):
    try:
        services = _services()
        services.ingredients.get(ingredient_id)
        available_only = request.args.get("available", "").lower() in ("1", "true", "yes")
        batches = services.repo.list_batches(ingredient_id, available_only=available_only)
        return jsonify({"batches": [b.to_dict() for b in batches]}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list batches")


@stock_bp.get("/ingredients/<int:ingredient_id>/movements")
def list_movements_route(ingredient_id: int):
    try:
        batch_id = request.args.get("batch_id")
        movements = _services().ledger.movements(
            ingredient_id=ingredient_id,
            reference=request.args.get("reference") or None,
            batch_id=to_id(batch_id, "batch_id") if batch_id else None,
            movement_type=request.args.get("movement_type") or None,
            since=_query_datetime("since"),
            until=_query_datetime("until"),
            limit=_query_limit(),
        )
        return jsonify({"movements": [m.to_dict() for m in movements]}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list movements")


@stock_bp.get("/ledger/verify")
def verify_ledger_route():
    try:
        checks = _services().ledger.verify()
        return jsonify({
            "ok": all(c.ok for c in checks),
            "checks": [c.to_dict() for c in checks],
        }), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to verify ledger")


@stock_bp.get("/valuation")
def valuation_route():
    try:
        return jsonify(_services().ledger.valuation()), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to compute valuation")


@stock_bp.get("/stats")
def stats_route():
    try:
        day = to_date(request.args.get("date"), "date")
        return jsonify(_services().ledger.daily_stats(day)), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to compute stock stats")


@stock_bp.get("/alerts")
def alerts_route():
    try:
        raw_severity = request.args.get("min_severity")
        min_severity = None
        if raw_severity:
            try:
                min_severity = Severity(raw_severity.lower())
            except ValueError:
                raise ValidationError(f"Unknown severity: {raw_severity}")
        alerts = _services().alerts.scan(min_severity=min_severity)
        return jsonify({"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to load stock alerts")


# Planning


@stock_bp.get("/reorder-suggestions")
def reorder_suggestions_route():
    """Query: lead_time_days (7), safety_multiplier (1.5), days (30) of consumption history."""
    try:
        ledger = _services().ledger
        suggestions = ledger.reorder_suggestions(
            request.args.get("lead_time_days", DEFAULT_LEAD_TIME_DAYS),
            request.args.get("safety_multiplier", DEFAULT_SAFETY_MULTIPLIER),
            days=request.args.get("days", DEFAULT_CONSUMPTION_DAYS),
        )
        return jsonify({
            "suggestions": [s.to_dict() for s in suggestions],
            "count": len(suggestions),
            "estimated_total_cost": float(quantize_money(sum((s.estimated_cost for s in suggestions), Decimal("0")))),
        }), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to compute reorder suggestions")


@stock_bp.get("/analytics")
def analytics_route():
    """Query: days (30), top (10)."""
    try:
        report = _services().ledger.analytics(
            days=request.args.get("days", DEFAULT_CONSUMPTION_DAYS),
            top=request.args.get("top", DEFAULT_TOP_CONSUMED),
        )
        return jsonify(report), 200
    except StockError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to compute stock analytics")
