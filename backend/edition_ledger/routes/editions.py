# Overview: Flask API routes for the edition ledger; parses input and returns JSON responses.

# backend/edition_ledger/routes/editions.py
"""
Edition Ledger API Routes

WHY: Webhook receivers, the admin UI and certificate pages all talk to the
ledger through these endpoints.

DESIGN:
- Order sync accepts the raw commerce order JSON (or {"order": ..., "skip_editions": bool})
- Admin removal / restore of single line items
- Product configuration, resequencing, duplicate checks, repair
- Read-only reconciliation audit

ERRORS:
- 400 invalid input, 404 unknown line item
- 409 edition overflow / repair needs confirmation
- 503 lock contention or rejected write (safe to retry; Retry-After set on lock timeout)
"""

import math

from flask import Blueprint, request, jsonify, current_app

from ..errors import (
    ConflictError,
    EditionOverflow,
    LedgerEntryNotFound,
    LockTimeout,
    PersistenceConflict,
    RepairConfirmationRequired,
    ValidationError,
)
from ..services import auditor, ledger_service
from ..services.edition_assigner import reassign


editions_bp = Blueprint("editions", __name__, url_prefix="/api/editions")


def _error_response(exc: Exception):
    """Map ledger errors to JSON responses; None if the error is unexpected."""
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, LedgerEntryNotFound):
        return jsonify({"error": str(exc), "line_item_id": exc.line_item_id}), 404
    if isinstance(exc, EditionOverflow):
        body = exc.to_dict()
        body["message"] = str(exc)
        return jsonify(body), 409
    if isinstance(exc, RepairConfirmationRequired):
        return jsonify({
            "error": "confirmation_required",
            "message": str(exc),
            "discrepancies": [d.to_dict() for d in exc.discrepancies],
        }), 409
    if isinstance(exc, ConflictError):
        return jsonify({"error": str(exc)}), 409
    if isinstance(exc, LockTimeout):
        response = jsonify({"error": "lock_timeout", "message": str(exc), "product_id": exc.product_id})
        response.headers["Retry-After"] = str(max(1, math.ceil(exc.timeout or 1)))
        return response, 503
    if isinstance(exc, PersistenceConflict):
        return jsonify({"error": "persistence_conflict", "message": str(exc), "product_id": exc.product_id}), 503
    return None


def _handle(exc: Exception, message: str):
    mapped = _error_response(exc)
    if mapped is not None:
        return mapped
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def _actor(data: dict | None = None):
    if data and data.get("actor"):
        return str(data["actor"])
    return request.headers.get("X-Actor")


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


# =============================================================================
# ORDER SYNC
# =============================================================================

@editions_bp.post("/orders/sync")
def sync_order_route():
    """
    Sync an order's line items into the ledger.

    Request body: the commerce order JSON, or
    {
        "order": {...},
        "skip_editions": false  (optional)
    }

    Returns:
        200: every product synced
        207: some products overflowed (growth was not applied; a product already
             over capacity still records changes that do not grow it)
        400: invalid payload
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "JSON object body required"}), 400

        order = data.get("order", data)
        skip_editions = _flag(data.get("skip_editions", False)) if "order" in data else False

        result = ledger_service.sync_order(
            order,
            skip_editions=skip_editions,
            actor=_actor(data),
        )
        return jsonify(result.to_dict()), 200 if result.ok else 207

    except Exception as e:
        return _handle(e, "Failed to sync order")


# =============================================================================
# LINE ITEMS
# =============================================================================

@editions_bp.get("/line-items/<line_item_id>")
def verify_edition_route(line_item_id: str):
    """Certificate lookup; ?order_id= must match when given."""
    try:
        data = ledger_service.verify_edition(line_item_id, request.args.get("order_id"))
        return jsonify({"edition": data}), 200
    except Exception as e:
        return _handle(e, "Failed to verify edition")


@editions_bp.get("/line-items/<line_item_id>/history")
def edition_history_route(line_item_id: str):
    try:
        return jsonify(ledger_service.get_edition_history(line_item_id)), 200
    except Exception as e:
        return _handle(e, "Failed to load edition history")


@editions_bp.post("/line-items/<line_item_id>/deactivate")
def deactivate_line_item_route(line_item_id: str):
    """
    Operator removal of a line item from its edition.

    Request body:
    {
        "reason": "manual",  (refunded | restocked | removed | manual)
        "notes": "Duplicate order",  (optional)
        "actor": "ops@example.com"  (optional, or X-Actor header)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        result = ledger_service.mark_line_item_inactive(
            line_item_id,
            reason=data.get("reason", "manual"),
            notes=data.get("notes"),
            actor=_actor(data),
        )
        return jsonify(result), 200
    except Exception as e:
        return _handle(e, "Failed to deactivate line item")


@editions_bp.post("/line-items/<line_item_id>/restore")
def restore_line_item_route(line_item_id: str):
    try:
        data = request.get_json(silent=True) or {}
        result = ledger_service.restore_line_item(line_item_id, actor=_actor(data))
        return jsonify(result), 200
    except Exception as e:
        return _handle(e, "Failed to restore line item")


# =============================================================================
# PRODUCTS
# =============================================================================

@editions_bp.get("/products/<product_id>")
def product_editions_route(product_id: str):
    try:
        include_history = _flag(request.args.get("include_history", "false"))
        return jsonify(ledger_service.get_product_editions(product_id, include_history=include_history)), 200
    except Exception as e:
        return _handle(e, "Failed to load product editions")


@editions_bp.put("/products/<product_id>/config")
def product_config_route(product_id: str):
    """
    Configure a product's edition size and resequence.

    Request body:
    {
        "edition_size": 50,  (null for an open edition)
        "title": "Nightfall Print"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or "edition_size" not in data:
            return jsonify({"error": "edition_size required"}), 400

        result = ledger_service.set_edition_size(
            product_id,
            data["edition_size"],
            title=data.get("title"),
            actor=_actor(data),
        )
        return jsonify({"success": True, "assignment": result.to_dict()}), 200
    except Exception as e:
        return _handle(e, "Failed to configure product")


@editions_bp.post("/products/<product_id>/reassign")
def reassign_route(product_id: str):
    try:
        data = request.get_json(silent=True) or {}
        result = reassign(product_id, source="admin", actor=_actor(data))
        return jsonify({"success": True, "assignment": result.to_dict()}), 200
    except Exception as e:
        return _handle(e, "Failed to reassign editions")


@editions_bp.get("/products/<product_id>/duplicates")
def duplicates_route(product_id: str):
    try:
        return jsonify(ledger_service.check_duplicates(product_id)), 200
    except Exception as e:
        return _handle(e, "Failed to check duplicates")


@editions_bp.post("/products/<product_id>/repair")
def repair_route(product_id: str):
    """
    Re-sync a product from the commerce backend.

    Request body:
    {
        "confirm_critical": true  (required when the audit finds critical discrepancies)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        result = ledger_service.repair_product(
            product_id,
            confirm_critical=_flag(data.get("confirm_critical", False)),
            actor=_actor(data),
        )
        return jsonify(result), 200
    except Exception as e:
        return _handle(e, "Failed to repair product")


# =============================================================================
# AUDIT / COLLECTORS
# =============================================================================

@editions_bp.get("/audit")
def audit_route():
    """Read-only reconciliation of one product (?product_id=) or one order (?order_id=)."""
    try:
        reports = auditor.audit(
            product_id=request.args.get("product_id"),
            order_id=request.args.get("order_id"),
        )
        counts = {}
        for report in reports:
            counts[report.severity] = counts.get(report.severity, 0) + 1
        return jsonify({
            "total": len(reports),
            "by_severity": counts,
            "discrepancies": [r.to_dict() for r in reports],
        }), 200
    except Exception as e:
        return _handle(e, "Failed to run audit")


@editions_bp.get("/collectors/<path:owner_email>")
def collector_editions_route(owner_email: str):
    try:
        return jsonify(ledger_service.get_collector_editions(owner_email)), 200
    except Exception as e:
        return _handle(e, "Failed to load collector editions")
