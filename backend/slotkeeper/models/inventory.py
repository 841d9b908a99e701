from __future__ import annotations

from datetime import datetime

from ..extensions import db
from slotkeeper.time_utils import to_utc_z


UNIT_STATUSES = ("AVAILABLE", "RESERVED", "SOLD", "EXPIRED")

KIND_CLASSIC = "CLASSIC"
KIND_ACCOUNT = "ACCOUNT"


class InventoryUnit(db.Model):
    """
    One stocked unit: a classic single-use item or a shared account.

    CLASSIC units bind to at most one order through linked_order_id.
    ACCOUNT units never use linked_order_id; their bindings live entirely in
    InventorySlot rows (one row per seat, total_slots rows).

    Status:
    - AVAILABLE / SOLD are recomputed from bindings after every assign/release.
    - RESERVED holds a unit out of sale (e.g. swapped out under warranty).
    - EXPIRED is time-derived (expiry_date < now) or written by the sweep.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_inventory_code"),
        db.Index("ix_inventory_product_status", "product_id", "status"),
        db.Index("ix_inventory_package_status", "package_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    # Nullable for pooled stock (matched on product only)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=True, index=True)

    purchase_date = db.Column(db.DateTime(timezone=True), nullable=False)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    purchase_price = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="AVAILABLE", index=True)

    is_account_based = db.Column(db.Boolean, nullable=False, default=False)
    total_slots = db.Column(db.Integer, nullable=True)

    # Classic binding. Real FK: a unit can only point at a live order.
    linked_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    previous_linked_order_id = db.Column(db.Integer, nullable=True)

    pool_warranty_months = db.Column(db.Integer, nullable=True)
    product_info = db.Column(db.Text, nullable=True)
    account_data = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    slots = db.relationship(
        "InventorySlot",
        back_populates="unit",
        order_by="InventorySlot.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    product = db.relationship("Product")
    package = db.relationship("Package")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def kind(self) -> str:
        return KIND_ACCOUNT if self.is_account_based else KIND_CLASSIC

    def is_expired(self, now: datetime) -> bool:
        return self.status == "EXPIRED" or self.expiry_date < now

    def slot_by_key(self, slot_key: str) -> "InventorySlot | None":
        for slot in self.slots:
            if slot.slot_key == slot_key:
                return slot
        return None

    def free_slots(self) -> list["InventorySlot"]:
        """Slots open for a new order: unassigned and not waiting for an update."""
        return [s for s in self.slots if not s.is_assigned and not s.needs_update]

    def slots_for_order(self, order_id: int) -> list["InventorySlot"]:
        return [s for s in self.slots if s.assigned_order_id == order_id]

    def slot_usage(self) -> dict:
        return {
            "used": sum(1 for s in self.slots if s.is_assigned),
            "total": self.total_slots or 0,
        }

    def __repr__(self) -> str:
        return f"<InventoryUnit id={self.id} code={self.code!r} kind={self.kind} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "product_id": self.product_id,
            "package_id": self.package_id,
            "purchase_date": to_utc_z(self.purchase_date),
            "expiry_date": to_utc_z(self.expiry_date),
            "purchase_price": self.purchase_price,
            "status": self.status,
            "is_account_based": self.is_account_based,
            "total_slots": self.total_slots,
            "profiles": [slot.to_dict() for slot in self.slots] if self.is_account_based else None,
            "linked_order_id": self.linked_order_id,
            "previous_linked_order_id": self.previous_linked_order_id,
            "pool_warranty_months": self.pool_warranty_months,
            "product_info": self.product_info,
            "account_data": self.account_data or {},
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventorySlot(db.Model):
    """
    One addressable seat of an account unit, keyed by (unit_id, slot_key).

    is_assigned is not stored: it is assigned_order_id IS NOT NULL, so the two
    can never disagree. Each slot has its own version so concurrent writers
    on the same seat conflict while writers on sibling seats do not.
    """
    __tablename__ = "inventory_slots"
    __table_args__ = (
        db.UniqueConstraint("unit_id", "slot_key", name="uq_inventory_slots_unit_key"),
        db.Index("ix_inventory_slots_expiry", "assigned_order_id", "expiry_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), nullable=False, index=True)
    slot_key = db.Column(db.String(32), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=1)
    label = db.Column(db.String(64), nullable=False)

    assigned_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    needs_update = db.Column(db.Boolean, nullable=False, default=False)
    previous_order_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    unit = db.relationship("InventoryUnit", back_populates="slots")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_assigned(self) -> bool:
        return self.assigned_order_id is not None

    def clear(self) -> None:
        self.assigned_order_id = None
        self.assigned_at = None
        self.expiry_at = None

    def __repr__(self) -> str:
        return f"<InventorySlot unit_id={self.unit_id} key={self.slot_key!r} order={self.assigned_order_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.slot_key,
            "label": self.label,
            "is_assigned": self.is_assigned,
            "assigned_order_id": self.assigned_order_id,
            "assigned_at": to_utc_z(self.assigned_at),
            "expiry_at": to_utc_z(self.expiry_at),
            "needs_update": self.needs_update,
            "previous_order_id": self.previous_order_id,
        }
