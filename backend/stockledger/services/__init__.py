"""Wiring for the stock services around one repository."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .adjustment_service import AdjustmentService
from .alert_service import DEFAULT_CRITICAL_DAYS, DEFAULT_WARNING_DAYS, AlertService
from .deduction_service import DeductionService
from .ingredient_service import IngredientService
from .ledger_service import LedgerService
from .reconciliation_service import DEFAULT_TOLERANCE, ReconciliationService
from .receive_service import ReceiveService


@dataclass
class StockServices:
    repo: object
    alerts: AlertService
    deductions: DeductionService
    receiving: ReceiveService
    reconciliation: ReconciliationService
    adjustments: AdjustmentService
    ingredients: IngredientService
    ledger: LedgerService


def build_stock_services(repository, config=None) -> StockServices:
    """
    config is any mapping with the STOCK_* keys (Flask's app.config works);
    missing keys fall back to the defaults.
    """
    config = config or {}
    alerts = AlertService(
        repository,
        warning_days=int(config.get("STOCK_EXPIRY_WARNING_DAYS", DEFAULT_WARNING_DAYS)),
        critical_days=int(config.get("STOCK_EXPIRY_CRITICAL_DAYS", DEFAULT_CRITICAL_DAYS)),
    )
    deductions = DeductionService(repository, alerts)
    receiving = ReceiveService(repository)
    return StockServices(
        repo=repository,
        alerts=alerts,
        deductions=deductions,
        receiving=receiving,
        reconciliation=ReconciliationService(
            repository,
            deductions,
            receiving,
            tolerance=Decimal(str(config.get("STOCK_RECONCILIATION_TOLERANCE", DEFAULT_TOLERANCE))),
        ),
        adjustments=AdjustmentService(repository, deductions, receiving),
        ingredients=IngredientService(repository, alerts),
        ledger=LedgerService(repository, alerts),
    )
