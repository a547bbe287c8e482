# backend/edition_ledger/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB stored next to the process by default; Postgres in production
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///edition_ledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bounded wait for a per-product lock. 0 = fail fast, negative = wait forever.
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "10"))

    # Whole-batch retry of an assignment pass on transient DB errors
    LEDGER_COMMIT_ATTEMPTS = int(os.environ.get("LEDGER_COMMIT_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF_SECONDS = float(os.environ.get("LEDGER_RETRY_BACKOFF_SECONDS", "0.1"))

    # Commerce backend used by the reconciliation auditor (optional)
    SHOPIFY_SHOP = os.environ.get("SHOPIFY_SHOP")
    SHOPIFY_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN")
    SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-01")
    SHOPIFY_TIMEOUT_SECONDS = float(os.environ.get("SHOPIFY_TIMEOUT_SECONDS", "15"))

    # "sql" (Flask-SQLAlchemy) or "memory" (single process, nothing persisted)
    LEDGER_STORE = os.environ.get("LEDGER_STORE", "sql")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()
    )
