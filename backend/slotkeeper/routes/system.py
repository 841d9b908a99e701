# Overview: Flask API routes for health, the expiry sweep, binding checks, the binding log and reports.

import time

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..models import InventoryUnit, Order
from ..services import expiry_service, ledger_service, order_service, reporting_service
from ..services.reporting_service import ReportError
from slotkeeper.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


@system_bp.get("/health")
def health():
    start_time = time.time()
    try:
        unit_count = db.session.query(InventoryUnit).count()
        order_count = db.session.query(Order).count()
    except Exception as e:
        current_app.logger.exception("Health check failed")
        return jsonify({"status": "unhealthy", "error": str(e)}), 503
    return jsonify({
        "status": "healthy",
        "checked_at": to_utc_z(utcnow()),
        "response_time_ms": round((time.time() - start_time) * 1000, 2),
        "counts": {"inventory": unit_count, "orders": order_count},
    })


@system_bp.post("/sweep")
def sweep_route():
    """Run the expiry sweep now."""
    try:
        result = expiry_service.sweep()
        return jsonify(result.to_dict())
    except Exception:
        current_app.logger.exception("Failed to run expiry sweep")
        return jsonify({"error": "Internal server error"}), 500


@system_bp.get("/bindings/check")
def bindings_check_route():
    problems = order_service.check_all_bindings()
    return jsonify({"consistent": not problems, "problems": problems})


@system_bp.get("/bindings/orphans")
def bindings_orphans_route():
    orphans = order_service.find_orphaned_bindings()
    return jsonify({"items": orphans, "count": len(orphans)})


@system_bp.post("/bindings/orphans/release")
def release_orphans_route():
    try:
        released = order_service.release_orphaned_bindings(actor=request.headers.get("X-Actor"))
        return jsonify({"released": released, "count": len(released)})
    except Exception:
        current_app.logger.exception("Failed to release orphaned bindings")
        return jsonify({"error": "Internal server error"}), 500


@system_bp.get("/events")
def binding_events_route():
    events, total = ledger_service.list_binding_events(
        order_id=request.args.get("order_id", type=int),
        inventory_id=request.args.get("inventory_id", type=int),
        event_category=request.args.get("category"),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [e.to_dict() for e in events], "total": total})


@system_bp.get("/reports/costs")
def cost_report_route():
    try:
        return jsonify(reporting_service.cost_report(
            start=request.args.get("start"),
            end=request.args.get("end"),
        ))
    except ReportError as e:
        return jsonify({"error": str(e)}), 400
