# backend/stockledger/routes/system.py
"""
System health endpoint.

Checks database connectivity and the stock ledger invariant
(current_stock == SUM(batch remaining)) with one aggregate query.
"""

import time
from decimal import Decimal

from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Ingredient, StockBatch, StockMovement
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        ingredient_count = db.session.query(Ingredient).count()
        batch_count = db.session.query(StockBatch).count()
        movement_count = db.session.query(StockMovement).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "ingredients": ingredient_count,
                "batches": batch_count,
                "movements": movement_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_ledger_health() -> dict:
    """
    Compare every ingredient aggregate with the sum of its batch remainders.

    A mismatch is reported as degraded: the API keeps serving, but the
    operator should run `flask stock verify-ledger`.
    """
    start_time = time.time()
    try:
        batch_totals = dict(
            db.session.query(StockBatch.ingredient_id, func.coalesce(func.sum(StockBatch.remaining_quantity), 0))
            .group_by(StockBatch.ingredient_id)
            .all()
        )
        mismatched = []
        for ingredient_id, current_stock in db.session.query(Ingredient.id, Ingredient.current_stock).all():
            batch_total = Decimal(str(batch_totals.get(ingredient_id, 0))).quantize(Decimal("0.001"))
            if batch_total != current_stock:
                mismatched.append(ingredient_id)

        elapsed_ms = (time.time() - start_time) * 1000

        if mismatched:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"Stock aggregate mismatch for ingredient(s): {', '.join(map(str, mismatched))}",
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Ledger health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Ledger check error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    ledger_health = check_ledger_health()

    all_checks = [database_health, ledger_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "ledger": ledger_health,
        }
    }

    return response, http_status
