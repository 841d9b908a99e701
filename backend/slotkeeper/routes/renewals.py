# Overview: Flask API routes for the renewal ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BindingError
from ..services import renewal_service
from slotkeeper.time_utils import parse_iso_datetime


renewals_bp = Blueprint("renewals", __name__, url_prefix="/api/renewals")


@renewals_bp.get("")
def list_renewals_route():
    try:
        from_date = parse_iso_datetime(request.args.get("from"))
        to_date = parse_iso_datetime(request.args.get("to"))
    except ValueError:
        return jsonify({"error": "from/to must be ISO-8601 datetimes"}), 400

    renewals = renewal_service.list_renewals(
        order_id=request.args.get("order_id", type=int),
        inventory_id=request.args.get("inventory_id", type=int),
        from_date=from_date,
        to_date=to_date,
    )
    return jsonify({"items": [r.to_dict() for r in renewals], "count": len(renewals)})


@renewals_bp.post("/orders/<int:order_id>")
def renew_order_route(order_id: int):
    """
    Renew an order.

    Body (all optional): months, amount, package_id, payment_status,
    use_custom_price, custom_price, note
    """
    data = request.get_json(silent=True) or {}
    try:
        renewal = renewal_service.renew_order(
            order_id,
            months=data.get("months"),
            amount=data.get("amount"),
            package_id=data.get("package_id"),
            payment_status=data.get("payment_status"),
            use_custom_price=bool(data.get("use_custom_price")),
            custom_price=data.get("custom_price"),
            note=data.get("note"),
            created_by=request.headers.get("X-Actor"),
        )
        return jsonify({"renewal": renewal.to_dict()}), 201
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to renew order")
        return jsonify({"error": "Internal server error"}), 500


@renewals_bp.patch("/<int:renewal_id>/payment-status")
def set_renewal_payment_status_route(renewal_id: int):
    data = request.get_json(silent=True) or {}
    payment_status = data.get("payment_status")
    if not payment_status:
        return jsonify({"error": "payment_status required"}), 400
    try:
        renewal = renewal_service.set_renewal_payment_status(renewal_id, payment_status)
        return jsonify({"renewal": renewal.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to set renewal payment status")
        return jsonify({"error": "Internal server error"}), 500
