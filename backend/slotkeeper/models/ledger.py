from __future__ import annotations

from ..extensions import db
from slotkeeper.time_utils import to_utc_z


class BindingEvent(db.Model):
    """
    Append-only audit row for binding changes (assign, release, renew, sweep, swap, delete).

    order_id / inventory_id are plain integers so events outlive the rows
    they describe.
    """
    __tablename__ = "binding_events"
    __table_args__ = (
        db.Index("ix_binding_events_order_occurred", "order_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # What happened
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., binding.assigned, order.expired
    event_category = db.Column(db.String(32), nullable=False, index=True)  # binding, order, inventory, renewal, sweep

    # What it refers to
    order_id = db.Column(db.Integer, nullable=True, index=True)
    inventory_id = db.Column(db.Integer, nullable=True, index=True)
    slot_keys = db.Column(db.JSON, nullable=True)
    actor = db.Column(db.String(64), nullable=True)

    # Business vs system time
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "event_category": self.event_category,
            "order_id": self.order_id,
            "inventory_id": self.inventory_id,
            "slot_keys": self.slot_keys,
            "actor": self.actor,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "note": self.note,
            "payload": self.payload,
        }


class CodeSequence(db.Model):
    """
    Atomic per-kind code counters (orders, inventory units).

    WHY: Prevent two writers from handing out the same human-readable code.
    """
    __tablename__ = "code_sequences"
    __table_args__ = (
        db.UniqueConstraint("kind", name="uq_code_sequences_kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
