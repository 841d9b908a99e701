# Overview: Flask API routes for products, packages and customers; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import BindingError
from ..models import Customer, Package, Product
from ..services import catalog_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_package,
    enforce_rules_customer,
    ValidationError,
    ConflictError,
)


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "description", "shared_inventory_pool"},
    required_on_create={"code", "name"},
)

PACKAGE_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "product_id",
        "name",
        "warranty_months",
        "cost_price",
        "ctv_price",
        "retail_price",
        "is_account_based",
        "default_slots",
        "account_columns",
    },
    required_on_create={"code", "product_id", "name"},
)

CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "customer_type", "phone", "email"},
    required_on_create={"code", "name"},
)

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/catalog")


def _create(model, policy, rules, create_fn, label: str):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=model, payload=payload, policy=policy, partial=False)
        if rules:
            rules(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        created = create_fn(patch=patch)
        return jsonify({label: created.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create %s", label)
        return jsonify({"error": "Internal server error"}), 500


@catalog_bp.get("/products")
def list_products_route():
    products = catalog_service.list_products()
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})


@catalog_bp.post("/products")
def create_product_route():
    return _create(Product, PRODUCT_POLICY, None, catalog_service.create_product, "product")


@catalog_bp.get("/packages")
def list_packages_route():
    packages = catalog_service.list_packages(product_id=request.args.get("product_id", type=int))
    return jsonify({"items": [p.to_dict() for p in packages], "count": len(packages)})


@catalog_bp.post("/packages")
def create_package_route():
    return _create(Package, PACKAGE_POLICY, enforce_rules_package, catalog_service.create_package, "package")


@catalog_bp.patch("/packages/<int:package_id>")
def update_package_route(package_id: int):
    """Changing default_slots resizes the package's account units."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Package, payload=payload, policy=PACKAGE_POLICY, partial=True)
        enforce_rules_package(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        package = catalog_service.update_package(package_id=package_id, patch=patch)
        return jsonify({"package": package.to_dict()})
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except BindingError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update package")
        return jsonify({"error": "Internal server error"}), 500


@catalog_bp.get("/customers")
def list_customers_route():
    customers = catalog_service.list_customers()
    return jsonify({"items": [c.to_dict() for c in customers], "count": len(customers)})


@catalog_bp.post("/customers")
def create_customer_route():
    return _create(Customer, CUSTOMER_POLICY, enforce_rules_customer, catalog_service.create_customer, "customer")
