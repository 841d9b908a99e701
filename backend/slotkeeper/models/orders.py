from __future__ import annotations

from sqlalchemy import event, inspect

from ..extensions import db
from ..errors import LedgerImmutable
from slotkeeper.time_utils import to_utc_z


ORDER_STATUSES = ("PROCESSING", "COMPLETED", "CANCELLED", "EXPIRED")
PAYMENT_STATUSES = ("UNPAID", "PAID", "REFUNDED")

# Statuses that freeze automatic PROCESSING/COMPLETED derivation
LOCKED_ORDER_STATUSES = ("CANCELLED", "EXPIRED")


class Order(db.Model):
    """
    Customer order for one package.

    Binding lives on both sides: inventory_item_id / inventory_profile_ids
    here, and linked_order_id (classic) or InventorySlot.assigned_order_id
    (account) on the unit. Only the allocation service writes either side.

    sale_price and cogs are snapshots. They do not follow later catalog
    price changes.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_orders_code"),
        db.Index("ix_orders_status_expiry", "status", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False, index=True)

    purchase_date = db.Column(db.DateTime(timezone=True), nullable=False)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    custom_expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PROCESSING", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID", index=True)

    # Order-side binding pointer. Not a FK: it may be stale, release() sweeps for the unit side.
    inventory_item_id = db.Column(db.Integer, nullable=True, index=True)
    inventory_profile_ids = db.Column(db.JSON, nullable=True)

    sale_price = db.Column(db.Integer, nullable=True)
    cogs = db.Column(db.Integer, nullable=True)
    use_custom_price = db.Column(db.Boolean, nullable=False, default=False)
    custom_price = db.Column(db.Integer, nullable=True)

    order_info = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer")
    package = db.relationship("Package")
    renewals = db.relationship(
        "Renewal",
        back_populates="order",
        order_by=lambda: [Renewal.created_at, Renewal.id],
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_binding(self) -> bool:
        return self.inventory_item_id is not None

    @property
    def is_locked(self) -> bool:
        return self.status in LOCKED_ORDER_STATUSES or self.payment_status == "REFUNDED"

    def __repr__(self) -> str:
        return f"<Order id={self.id} code={self.code!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "customer_id": self.customer_id,
            "package_id": self.package_id,
            "purchase_date": to_utc_z(self.purchase_date),
            "expiry_date": to_utc_z(self.expiry_date),
            "custom_expiry_date": to_utc_z(self.custom_expiry_date),
            "status": self.status,
            "payment_status": self.payment_status,
            "inventory_item_id": self.inventory_item_id,
            "inventory_profile_ids": list(self.inventory_profile_ids or []) or None,
            "sale_price": self.sale_price,
            "cogs": self.cogs,
            "use_custom_price": self.use_custom_price,
            "custom_price": self.custom_price,
            "order_info": self.order_info,
            "notes": self.notes,
            "created_by": self.created_by,
            "renewals": [r.to_dict() for r in self.renewals],
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Renewal(db.Model):
    """
    Append-only extension event for an order or an inventory unit.

    Exactly one of order_id / inventory_id is set. Rows never change after
    insert except payment_status.
    """
    __tablename__ = "renewals"
    __table_args__ = (
        db.CheckConstraint(
            "(order_id IS NULL) <> (inventory_id IS NULL)",
            name="ck_renewals_single_target",
        ),
        db.Index("ix_renewals_created", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), nullable=True, index=True)

    months = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Integer, nullable=False, default=0)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=True)
    use_custom_price = db.Column(db.Boolean, nullable=False, default=False)

    previous_expiry_date = db.Column(db.DateTime(timezone=True), nullable=False)
    new_expiry_date = db.Column(db.DateTime(timezone=True), nullable=False)

    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID")
    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    # Business time of the renewal; replaying the ledger depends on it
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    order = db.relationship("Order", back_populates="renewals")
    unit = db.relationship(
        "InventoryUnit",
        backref=db.backref("renewals", lazy=True, cascade="all, delete-orphan"),
    )

    @property
    def target(self) -> tuple[str, int]:
        if self.order_id is not None:
            return ("order", self.order_id)
        return ("inventory", self.inventory_id)

    def to_dict(self) -> dict:
        target_type, target_id = self.target
        return {
            "id": self.id,
            "target_type": target_type,
            "target_id": target_id,
            "order_id": self.order_id,
            "inventory_id": self.inventory_id,
            "months": self.months,
            "amount": self.amount,
            "package_id": self.package_id,
            "use_custom_price": self.use_custom_price,
            "previous_expiry_date": to_utc_z(self.previous_expiry_date),
            "new_expiry_date": to_utc_z(self.new_expiry_date),
            "payment_status": self.payment_status,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


RENEWAL_MUTABLE_FIELDS = {"payment_status"}


@event.listens_for(Renewal, "before_update")
def prevent_renewal_rewrite(mapper, connection, target):
    """Reject any flush that changes a renewal column other than payment_status."""
    state = inspect(target)
    changed = [
        attr.key
        for attr in state.mapper.column_attrs
        if attr.key not in RENEWAL_MUTABLE_FIELDS and state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise LedgerImmutable(
            f"Renewal {target.id} is immutable",
            details={"renewal_id": target.id, "fields": sorted(changed)},
        )
