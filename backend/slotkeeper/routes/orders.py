# Overview: Flask API routes for orders and their bindings; parses input and returns JSON responses.

"""Order API routes. Thin: validate payload, call the coordinator, render JSON."""

from flask import Blueprint, request, jsonify, current_app

from ..errors import BindingError
from ..models import Order
from ..services import allocation_service, order_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_order,
    ValidationError,
    ConflictError,
)


ORDER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "customer_id",
        "package_id",
        "purchase_date",
        "inventory_item_id",
        "use_custom_price",
        "custom_price",
        "custom_expiry_date",
        "payment_status",
        "notes",
    },
    required_on_create={"customer_id", "package_id"},
    extra_fields={"slot_ids"},
)

ORDER_PATCH_POLICY = ModelValidationPolicy(
    writable_fields=set(order_service.ORDER_PATCH_FIELDS) - {"slot_ids"},
    extra_fields={"slot_ids"},
)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _actor():
    return request.headers.get("X-Actor")


@orders_bp.get("")
def list_orders_route():
    status = request.args.get("status")
    customer_id = request.args.get("customer_id", type=int)
    orders = order_service.list_orders(status=status, customer_id=customer_id)
    return jsonify({"items": [o.to_dict() for o in orders], "count": len(orders)})


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.post("")
def create_order_route():
    """
    Create an order, optionally bound to a unit.

    Body: customer_id, package_id, [inventory_item_id, slot_ids, purchase_date,
    use_custom_price, custom_price, custom_expiry_date, payment_status, notes, code]
    """
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Order, payload=payload, policy=ORDER_CREATE_POLICY, partial=False)
        enforce_rules_order(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        order = order_service.create_order(actor=_actor(), **patch)
        return jsonify({"order": order.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>")
def update_order_route(order_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Order, payload=payload, policy=ORDER_PATCH_POLICY, partial=True)
        enforce_rules_order(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        order = order_service.update_order(order_id, patch=patch, actor=_actor())
        return jsonify({"order": order.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
def delete_order_route(order_id: int):
    """Delete an order. Warnings list slots left on expired account units."""
    try:
        result = order_service.delete_order(order_id, actor=_actor())
        return jsonify(result)
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    try:
        order = order_service.cancel_order(order_id, actor=_actor())
        return jsonify({"order": order.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/payment-status")
def set_payment_status_route(order_id: int):
    data = request.get_json(silent=True) or {}
    payment_status = data.get("payment_status")
    if not payment_status:
        return jsonify({"error": "payment_status required"}), 400
    try:
        order = order_service.set_payment_status(order_id, payment_status, actor=_actor())
        return jsonify({"order": order.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to set payment status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/release")
def release_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        released = allocation_service.release_order_binding(
            order_id,
            unit_id=data.get("inventory_item_id"),
            actor=_actor(),
        )
        return jsonify({"released": released})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to release order binding")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/swap")
def swap_binding_route(order_id: int):
    """Warranty replacement. Body: inventory_item_id, [slot_ids]."""
    data = request.get_json(silent=True) or {}
    unit_id = data.get("inventory_item_id")
    if not isinstance(unit_id, int) or isinstance(unit_id, bool):
        return jsonify({"error": "inventory_item_id required"}), 400
    try:
        order = allocation_service.swap_binding(order_id, unit_id, data.get("slot_ids"), actor=_actor())
        return jsonify({"order": order.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to swap binding")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/consistency")
def check_consistency_route(order_id: int):
    try:
        return jsonify(order_service.check_binding_consistency(order_id))
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.get("/candidates")
def candidates_route():
    """Units an operator may pick for ?package_id=..[&order_id=.. when editing]."""
    package_id = request.args.get("package_id", type=int)
    if not package_id:
        return jsonify({"error": "package_id required"}), 400
    editing_order_id = request.args.get("order_id", type=int)
    try:
        units = allocation_service.resolve_candidates(package_id, editing_order_id)
        return jsonify({"items": [u.to_dict() for u in units], "count": len(units)})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
