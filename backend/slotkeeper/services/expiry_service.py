# Overview: Expiry Engine: order expiry computation, ledger replay and the expiry sweep.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..extensions import db
from ..models import InventorySlot, InventoryUnit, Order
from slotkeeper.time_utils import add_months, normalize_datetime, resolve_now
from .allocation_service import release
from .concurrency import run_with_retry
from .inventory_service import recompute_unit_status
from .ledger_service import append_binding_event


TERMINAL_ORDER_STATUSES = ("CANCELLED", "EXPIRED")


def replay_order_expiry(
    purchase_date: datetime,
    base_months: int,
    renewals: Iterable,
) -> datetime:
    """
    Rebuild an order's expiry from the renewal ledger alone.

    Start at the first renewal's recorded previous expiry (which captures
    any operator override in force at the time), else purchase + base
    months; each renewal (in created_at order) extends from the later of
    the running expiry and the renewal's own time, the same rule
    renew_order applies.
    """
    ordered = sorted(renewals, key=lambda r: (r.created_at, r.id or 0))
    seed = getattr(ordered[0], "previous_expiry_date", None) if ordered else None
    if seed is not None:
        expiry = normalize_datetime(seed)
    else:
        expiry = add_months(purchase_date, int(base_months or 0))
    for renewal in ordered:
        start = max(expiry, normalize_datetime(renewal.created_at))
        expiry = add_months(start, int(renewal.months))
    return expiry


def compute_order_expiry(
    purchase_date: datetime,
    base_months: int,
    renewals: Iterable = (),
    custom_expiry: Optional[datetime] = None,
) -> datetime:
    """
    Expiry of an order.

    - custom_expiry (operator override) wins unconditionally.
    - No renewals: purchase_date + base_months, calendar-aware.
    - Renewals: ledger replay (see replay_order_expiry).
    """
    if custom_expiry is not None:
        return normalize_datetime(custom_expiry)
    renewals = list(renewals)
    if not renewals:
        return add_months(purchase_date, int(base_months or 0))
    return replay_order_expiry(purchase_date, base_months, renewals)


def expiry_after_package_change(order: Order, new_base_months: int) -> datetime:
    """
    Expiry to keep when an order's package or purchase date is edited.

    An order with renewals keeps the latest renewal's new expiry (or its
    stored expiry) instead of recomputing from the new package, so a paid
    extension is never shortened.
    """
    if order.custom_expiry_date is not None:
        return order.custom_expiry_date
    if order.renewals:
        latest = order.renewals[-1]
        return latest.new_expiry_date or order.expiry_date
    return add_months(order.purchase_date, int(new_base_months or 0))


# =============================================================================
# Sweep
# =============================================================================

@dataclass
class SweepResult:
    released_slots: list[dict] = field(default_factory=list)
    expired_order_ids: list[int] = field(default_factory=list)
    status_changes: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "released_slots": self.released_slots,
            "expired_order_ids": self.expired_order_ids,
            "status_changes": self.status_changes,
        }


def _mark_expired(order: Order, result: SweepResult, current: datetime) -> None:
    if order.status in TERMINAL_ORDER_STATUSES or order.payment_status == "REFUNDED":
        return
    order.status = "EXPIRED"
    result.expired_order_ids.append(order.id)
    append_binding_event(
        event_type="order.expired",
        event_category="sweep",
        order_id=order.id,
        inventory_id=order.inventory_item_id,
        occurred_at=current,
    )


def sweep_locked(now: datetime | None = None) -> SweepResult:
    """
    Run the sweep inside the caller's transaction. Does not commit.

    1. Every assigned slot with expiry_at < now is released; its order is
       marked EXPIRED unless already terminal.
    2. Every other non-terminal order past its expiry is marked EXPIRED.
       Classic bindings are kept: a delivered key stays delivered.
    3. Unit statuses are recomputed (lapsed stock expires, renewed stock
       becomes available again).
    """
    current = resolve_now(now)
    result = SweepResult()

    lapsed_slots = (
        db.session.query(InventorySlot)
        .filter(InventorySlot.assigned_order_id.isnot(None))
        .filter(InventorySlot.expiry_at < current)
        .order_by(InventorySlot.unit_id.asc(), InventorySlot.position.asc())
        .all()
    )
    by_order: dict[int, set[int]] = {}
    for slot in lapsed_slots:
        by_order.setdefault(slot.assigned_order_id, set()).add(slot.unit_id)

    for order_id in sorted(by_order):
        order = db.session.query(Order).filter_by(id=order_id).first()
        if order is not None:
            _mark_expired(order, result, current)
        for unit_id in sorted(by_order[order_id]):
            for item in release(order_id, unit_id=unit_id, now=current):
                result.released_slots.append({"order_id": order_id, **item})

    overdue = (
        db.session.query(Order)
        .filter(Order.status.notin_(TERMINAL_ORDER_STATUSES))
        .filter(Order.payment_status != "REFUNDED")
        .filter(Order.expiry_date < current)
        .order_by(Order.id.asc())
        .all()
    )
    for order in overdue:
        _mark_expired(order, result, current)

    for unit in db.session.query(InventoryUnit).order_by(InventoryUnit.id.asc()).all():
        before = unit.status
        after = recompute_unit_status(unit, current)
        if before != after:
            result.status_changes.append({"inventory_id": unit.id, "from": before, "to": after})

    db.session.flush()
    return result


def sweep(now: datetime | None = None) -> SweepResult:
    """The expiry sweep as its own transaction."""
    def _op():
        result = sweep_locked(now)
        db.session.commit()
        return result

    return run_with_retry(_op)
