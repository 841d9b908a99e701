# Overview: Catalog operations for products, packages and customers.

"""
Catalog Service

Read-mostly. The only write with a side effect on stock is update_package:
a changed default_slots is pushed to every account unit of the package,
keeping the slots that are held.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import CatalogError
from ..models import Customer, InventoryUnit, Package, Product
from ..validation import ConflictError
from slotkeeper.time_utils import resolve_now
from .concurrency import run_with_retry
from .ledger_service import append_binding_event


PRODUCT_MUTABLE_FIELDS = {"code", "name", "description", "shared_inventory_pool"}
PACKAGE_MUTABLE_FIELDS = {
    "code",
    "name",
    "warranty_months",
    "cost_price",
    "ctv_price",
    "retail_price",
    "is_account_based",
    "default_slots",
    "account_columns",
}
CUSTOMER_MUTABLE_FIELDS = {"code", "name", "customer_type", "phone", "email"}


def _apply_patch(obj, patch: dict, allowed: set[str]) -> None:
    for k, v in patch.items():
        if k not in allowed:
            continue
        setattr(obj, k, v)


def _ensure_unique_code(model, code: str | None, exclude_id: int | None = None) -> None:
    if not code:
        return
    q = db.session.query(model.id).filter(model.code == code)
    if exclude_id is not None:
        q = q.filter(model.id != exclude_id)
    if q.first():
        raise ConflictError(f"Code {code!r} already exists.")


def sale_price_for(package: Package, customer: Customer | None) -> int:
    """Collaborator (CTV) price for CTV customers, retail price otherwise."""
    if customer is not None and customer.customer_type == "CTV":
        return int(package.ctv_price or 0)
    return int(package.retail_price or 0)


def get_package(package_id: int) -> Package:
    package = db.session.query(Package).filter_by(id=package_id).first()
    if not package:
        raise CatalogError("Package not found", details={"package_id": package_id})
    return package


def get_customer(customer_id: int) -> Customer:
    customer = db.session.query(Customer).filter_by(id=customer_id).first()
    if not customer:
        raise CatalogError("Customer not found", details={"customer_id": customer_id})
    return customer


# =============================================================================
# Products
# =============================================================================

def create_product(*, patch: dict) -> Product:
    def _op():
        _ensure_unique_code(Product, patch.get("code"))
        product = Product()
        _apply_patch(product, patch, PRODUCT_MUTABLE_FIELDS)
        db.session.add(product)
        db.session.commit()
        return product

    return run_with_retry(_op)


def update_product(*, product_id: int, patch: dict) -> Product:
    def _op():
        product = db.session.query(Product).filter_by(id=product_id).first()
        if not product:
            raise CatalogError("Product not found", details={"product_id": product_id})
        _ensure_unique_code(Product, patch.get("code"), exclude_id=product.id)
        _apply_patch(product, patch, PRODUCT_MUTABLE_FIELDS)
        db.session.commit()
        return product

    return run_with_retry(_op)


def list_products() -> list[Product]:
    return db.session.query(Product).order_by(Product.name.asc(), Product.id.asc()).all()


# =============================================================================
# Packages
# =============================================================================

def _normalized_default_slots(is_account_based: bool, value: int | None) -> int | None:
    if not is_account_based:
        return None
    if value is None:
        value = current_app.config.get("DEFAULT_ACCOUNT_SLOTS", 5)
    return max(1, int(value))


def create_package(*, patch: dict) -> Package:
    def _op():
        product = db.session.query(Product).filter_by(id=patch.get("product_id")).first()
        if not product:
            raise CatalogError("Product not found", details={"product_id": patch.get("product_id")})
        _ensure_unique_code(Package, patch.get("code"))

        package = Package(product_id=product.id)
        _apply_patch(package, patch, PACKAGE_MUTABLE_FIELDS)
        package.default_slots = _normalized_default_slots(bool(package.is_account_based), package.default_slots)
        db.session.add(package)
        db.session.commit()
        return package

    return run_with_retry(_op)


def update_package(*, package_id: int, patch: dict, now: datetime | None = None) -> Package:
    """
    Update a package. A changed slot count is pushed to its account units in
    the same transaction. Held slots survive, so a unit can keep more slots
    than the new default.
    """
    from .inventory_service import recompute_unit_status, resize_unit_slots

    def _op():
        current = resolve_now(now)
        package = get_package(package_id)
        _ensure_unique_code(Package, patch.get("code"), exclude_id=package.id)

        _apply_patch(package, patch, PACKAGE_MUTABLE_FIELDS)
        package.default_slots = _normalized_default_slots(bool(package.is_account_based), package.default_slots)

        if package.is_account_based:
            units = (
                db.session.query(InventoryUnit)
                .filter(InventoryUnit.package_id == package.id)
                .filter(InventoryUnit.is_account_based.is_(True))
                .order_by(InventoryUnit.id.asc())
                .all()
            )
            for unit in units:
                if resize_unit_slots(unit, package.default_slots):
                    recompute_unit_status(unit, current)
                    append_binding_event(
                        event_type="inventory.resized",
                        event_category="inventory",
                        inventory_id=unit.id,
                        occurred_at=current,
                        payload={"total_slots": unit.total_slots, "requested": package.default_slots},
                    )

        db.session.commit()
        return package

    return run_with_retry(_op)


def list_packages(product_id: int | None = None) -> list[Package]:
    q = db.session.query(Package)
    if product_id is not None:
        q = q.filter(Package.product_id == product_id)
    return q.order_by(Package.name.asc(), Package.id.asc()).all()


# =============================================================================
# Customers
# =============================================================================

def create_customer(*, patch: dict) -> Customer:
    def _op():
        _ensure_unique_code(Customer, patch.get("code"))
        customer = Customer()
        _apply_patch(customer, patch, CUSTOMER_MUTABLE_FIELDS)
        if not customer.customer_type:
            customer.customer_type = "RETAIL"
        db.session.add(customer)
        db.session.commit()
        return customer

    return run_with_retry(_op)


def list_customers() -> list[Customer]:
    return db.session.query(Customer).order_by(Customer.name.asc(), Customer.id.asc()).all()
