# Overview: Flask API routes for inventory units and slots; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BindingError
from ..models import InventoryUnit
from ..services import inventory_service, renewal_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_inventory_unit,
    ValidationError,
    ConflictError,
)


UNIT_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "product_id",
        "package_id",
        "purchase_date",
        "expiry_date",
        "purchase_price",
        "is_account_based",
        "total_slots",
        "pool_warranty_months",
        "product_info",
        "account_data",
        "notes",
    },
    required_on_create={"product_id"},
)

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _actor():
    return request.headers.get("X-Actor")


@inventory_bp.get("")
def list_units_route():
    units = inventory_service.list_units(
        product_id=request.args.get("product_id", type=int),
        package_id=request.args.get("package_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"items": [u.to_dict() for u in units], "count": len(units)})


@inventory_bp.get("/<int:unit_id>")
def get_unit_route(unit_id: int):
    try:
        unit = inventory_service.get_unit(unit_id)
        return jsonify({"unit": unit.to_dict(), "slot_usage": unit.slot_usage()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status


@inventory_bp.post("")
def create_unit_route():
    """Stock intake."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=InventoryUnit, payload=payload, policy=UNIT_POLICY, partial=False)
        enforce_rules_inventory_unit(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        unit = inventory_service.create_unit(**patch)
        return jsonify({"unit": unit.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create inventory unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.delete("/<int:unit_id>")
def delete_unit_route(unit_id: int):
    """Releases every binding on the unit, then deletes it."""
    try:
        released = inventory_service.delete_unit(unit_id, actor=_actor())
        return jsonify({"deleted": True, "released_order_ids": released})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete inventory unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:unit_id>/reserve")
def reserve_unit_route(unit_id: int):
    try:
        unit = inventory_service.reserve_unit(unit_id, actor=_actor())
        return jsonify({"unit": unit.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to reserve inventory unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:unit_id>/unreserve")
def unreserve_unit_route(unit_id: int):
    try:
        unit = inventory_service.unreserve_unit(unit_id, actor=_actor())
        return jsonify({"unit": unit.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to unreserve inventory unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:unit_id>/slots/<slot_key>/release")
def release_slot_route(unit_id: int, slot_key: str):
    try:
        unit = inventory_service.release_slot(unit_id, slot_key, actor=_actor())
        return jsonify({"unit": unit.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to release slot")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:unit_id>/slots/<slot_key>/clear-update")
def clear_slot_update_route(unit_id: int, slot_key: str):
    try:
        unit = inventory_service.clear_slot_needs_update(unit_id, slot_key, actor=_actor())
        return jsonify({"unit": unit.to_dict()})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to clear slot update flag")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:unit_id>/renew")
def renew_unit_route(unit_id: int):
    """Body: months, [amount, payment_status, note]."""
    data = request.get_json(silent=True) or {}
    try:
        renewal = renewal_service.renew_inventory(
            unit_id,
            months=data.get("months"),
            amount=data.get("amount") or 0,
            payment_status=data.get("payment_status") or "UNPAID",
            note=data.get("note"),
            created_by=_actor(),
        )
        return jsonify({"renewal": renewal.to_dict()}), 201
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to renew inventory unit")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:unit_id>/order-info")
def order_info_route(unit_id: int):
    """Preview of the delivery text for ?slot_ids=slot-1,slot-2."""
    raw = request.args.get("slot_ids") or ""
    slot_ids = [s.strip() for s in raw.split(",") if s.strip()]
    try:
        unit = inventory_service.get_unit(unit_id)
        return jsonify({"order_info": inventory_service.build_order_info(unit, slot_ids)})
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
