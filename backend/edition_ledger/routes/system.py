# backend/edition_ledger/routes/system.py
"""
System health endpoint.

Checks the ledger database and reports the configured store for
deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import LedgerEntry, ProductEdition
from ..services.ledger_store import SqlLedgerStore, get_ledger_store
from edition_ledger.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        entry_count = db.session.query(LedgerEntry).count()
        product_count = db.session.query(ProductEdition).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "ledger_entries": entry_count,
                "configured_products": product_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy (or running on the in-memory store)
    - 503: database unreachable
    """
    start_time = time.time()
    store = get_ledger_store()

    checks = {}
    if isinstance(store, SqlLedgerStore):
        checks["database"] = check_database_health()

    unhealthy = any(check["status"] == "unhealthy" for check in checks.values())

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "store": type(store).__name__,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }
    return response, 503 if unhealthy else 200
