"""
Pytest fixtures for the slotkeeper backend tests.

Provides the app on in-memory SQLite, a clean database per test, a small
catalog (classic, account and pooled products) and unit/order factories.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest

from slotkeeper import create_app
from slotkeeper.extensions import db
from slotkeeper.models import InventorySlot, InventoryUnit, Order
from slotkeeper.services import catalog_service, inventory_service, order_service


T0 = datetime(2025, 1, 1)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        # Sweep-before-allocate has its own test; elsewhere it would hide ordering effects
        'SWEEP_BEFORE_ALLOCATE': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def catalog(db_session):
    """
    Catalog used by most tests.

    - classic_pkg: 1-month key package (retail 100000, CTV 80000)
    - classic_pkg_6m: 6-month package of the same product
    - account_pkg: 1-month shared account, 3 slots, email/password delivered
    - pooled_a / pooled_b: two packages of a product drawing from one pool
    """
    key_product = catalog_service.create_product(patch={"code": "KEY", "name": "License Key"})
    classic_pkg = catalog_service.create_package(patch={
        "code": "KEY-1M",
        "product_id": key_product.id,
        "name": "Key 1 month",
        "warranty_months": 1,
        "retail_price": 100000,
        "ctv_price": 80000,
    })
    classic_pkg_6m = catalog_service.create_package(patch={
        "code": "KEY-6M",
        "product_id": key_product.id,
        "name": "Key 6 months",
        "warranty_months": 6,
        "retail_price": 500000,
        "ctv_price": 400000,
    })

    account_product = catalog_service.create_product(patch={"code": "STREAM", "name": "Streaming"})
    account_pkg = catalog_service.create_package(patch={
        "code": "STREAM-1M",
        "product_id": account_product.id,
        "name": "Streaming shared 1 month",
        "warranty_months": 1,
        "retail_price": 60000,
        "ctv_price": 50000,
        "is_account_based": True,
        "default_slots": 3,
        "account_columns": [
            {"id": "email", "title": "Email", "include_in_order_info": True},
            {"id": "password", "title": "Password", "include_in_order_info": True},
            {"id": "supplier", "title": "Supplier", "include_in_order_info": False},
        ],
    })

    pooled_product = catalog_service.create_product(
        patch={"code": "VPN", "name": "VPN", "shared_inventory_pool": True},
    )
    pooled_a = catalog_service.create_package(patch={
        "code": "VPN-1M", "product_id": pooled_product.id, "name": "VPN 1 month", "warranty_months": 1,
    })
    pooled_b = catalog_service.create_package(patch={
        "code": "VPN-3M", "product_id": pooled_product.id, "name": "VPN 3 months", "warranty_months": 3,
    })

    retail = catalog_service.create_customer(patch={"code": "C001", "name": "Retail Buyer"})
    ctv = catalog_service.create_customer(patch={"code": "C002", "name": "Reseller", "customer_type": "CTV"})

    return SimpleNamespace(
        key_product=key_product,
        classic_pkg=classic_pkg,
        classic_pkg_6m=classic_pkg_6m,
        account_product=account_product,
        account_pkg=account_pkg,
        pooled_product=pooled_product,
        pooled_a=pooled_a,
        pooled_b=pooled_b,
        retail=retail,
        ctv=ctv,
    )


@pytest.fixture(scope='function')
def make_classic_unit(catalog):
    def _make(**overrides):
        fields = {
            "product_id": catalog.key_product.id,
            "package_id": catalog.classic_pkg.id,
            "purchase_date": T0,
            "purchase_price": 50000,
            "product_info": "KEY-AAAA-BBBB",
            "now": T0,
        }
        fields.update(overrides)
        return inventory_service.create_unit(**fields)
    return _make


@pytest.fixture(scope='function')
def make_account_unit(catalog):
    def _make(**overrides):
        fields = {
            "product_id": catalog.account_product.id,
            "package_id": catalog.account_pkg.id,
            "purchase_date": T0,
            "purchase_price": 90000,
            "account_data": {"email": "shared@example.com", "password": "s3cret", "supplier": "ACME"},
            "now": T0,
        }
        fields.update(overrides)
        return inventory_service.create_unit(**fields)
    return _make


@pytest.fixture(scope='function')
def make_order(catalog):
    def _make(package=None, customer=None, **overrides):
        fields = {
            "customer_id": (customer or catalog.retail).id,
            "package_id": (package or catalog.classic_pkg).id,
            "purchase_date": T0,
            "now": T0,
        }
        fields.update(overrides)
        return order_service.create_order(**fields)
    return _make


def assert_binding_invariants():
    """Slot count bound, is_assigned definition and the COMPLETED/PROCESSING rule."""
    for unit in db.session.query(InventoryUnit).all():
        if unit.is_account_based:
            assert sum(1 for s in unit.slots if s.is_assigned) <= unit.total_slots
    for slot in db.session.query(InventorySlot).all():
        assert slot.is_assigned == (slot.assigned_order_id is not None)
    for order in db.session.query(Order).all():
        bound_unit = db.session.query(InventoryUnit).filter(InventoryUnit.linked_order_id == order.id).first()
        bound_slot = db.session.query(InventorySlot).filter(InventorySlot.assigned_order_id == order.id).first()
        has_binding = bound_unit is not None or bound_slot is not None
        if order.status == "COMPLETED":
            assert has_binding, f"{order.code} is COMPLETED without a binding"
        if order.status == "PROCESSING":
            assert not has_binding, f"{order.code} is PROCESSING with a binding"
