from __future__ import annotations

from ..extensions import db
from slotkeeper.time_utils import to_utc_z


CUSTOMER_TYPES = ("CTV", "RETAIL")


class Product(db.Model):
    """
    Catalog product.

    POOLING: when shared_inventory_pool is set, every package of the product
    draws from one stock pool (units matched on product_id, package boundary
    ignored). Otherwise units are matched on the exact package_id.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    shared_inventory_pool = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} pooled={self.shared_inventory_pool}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "shared_inventory_pool": self.shared_inventory_pool,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Package(db.Model):
    """
    Sellable package of a product.

    warranty_months is the base term of an order for this package.
    Account-based packages carry the slot count and the column schema used
    for the units stocked under them.
    """
    __tablename__ = "packages"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_packages_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)

    warranty_months = db.Column(db.Integer, nullable=False, default=1)

    # Prices are whole currency units
    cost_price = db.Column(db.Integer, nullable=False, default=0)
    ctv_price = db.Column(db.Integer, nullable=False, default=0)
    retail_price = db.Column(db.Integer, nullable=False, default=0)

    is_account_based = db.Column(db.Boolean, nullable=False, default=False)
    default_slots = db.Column(db.Integer, nullable=True)
    # [{"id": "email", "title": "Email", "include_in_order_info": true}, ...]
    account_columns = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("packages", lazy=True))

    def __repr__(self) -> str:
        return f"<Package id={self.id} code={self.code!r} product_id={self.product_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "product_id": self.product_id,
            "name": self.name,
            "warranty_months": self.warranty_months,
            "cost_price": self.cost_price,
            "ctv_price": self.ctv_price,
            "retail_price": self.retail_price,
            "is_account_based": self.is_account_based,
            "default_slots": self.default_slots,
            "account_columns": self.account_columns or [],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Customer(db.Model):
    """Buyer of orders. customer_type selects the price tier (CTV = reseller)."""
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_customers_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    customer_type = db.Column(db.String(16), nullable=False, default="RETAIL")
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "customer_type": self.customer_type,
            "phone": self.phone,
            "email": self.email,
            "created_at": to_utc_z(self.created_at),
        }
