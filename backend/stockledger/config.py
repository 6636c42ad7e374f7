# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bounded retry for row-lock / optimistic-lock conflicts
    STOCK_RETRY_ATTEMPTS = int(os.environ.get("STOCK_RETRY_ATTEMPTS", "3"))
    STOCK_RETRY_BACKOFF = float(os.environ.get("STOCK_RETRY_BACKOFF", "0.1"))

    # Physical counts closer than this to system stock are left alone
    STOCK_RECONCILIATION_TOLERANCE = os.environ.get("STOCK_RECONCILIATION_TOLERANCE", "0.01")

    STOCK_EXPIRY_WARNING_DAYS = int(os.environ.get("STOCK_EXPIRY_WARNING_DAYS", "7"))
    STOCK_EXPIRY_CRITICAL_DAYS = int(os.environ.get("STOCK_EXPIRY_CRITICAL_DAYS", "3"))
