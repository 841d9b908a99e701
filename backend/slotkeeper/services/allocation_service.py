# Overview: Slot Allocator: candidate resolution, assign, release and warranty swap.

"""
Slot Allocator

Binding invariants (both sides are written only here):
- Classic unit: unit.linked_order_id == order.id and order.inventory_item_id == unit.id.
- Account unit: every InventorySlot with assigned_order_id == order.id sits on
  order.inventory_item_id and its slot_key is in order.inventory_profile_ids.
- An order holds at most one unit at a time.

assign() and release() never commit. They run inside the caller's
transaction (order create/update/delete, sweep, swap) so the order side and
the unit side change together or not at all.
"""

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..errors import (
    BindingError,
    CatalogError,
    NoSlotSelected,
    OrderLocked,
    OrderNotFound,
    SlotAlreadyAssigned,
    SlotNeedsUpdate,
    SlotNotFound,
    UnitExpired,
)
from ..models import InventorySlot, InventoryUnit, Order, Package
from ..models.inventory import KIND_ACCOUNT, KIND_CLASSIC
from ..models.orders import LOCKED_ORDER_STATUSES
from slotkeeper.time_utils import resolve_now
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import build_order_info, get_unit, recompute_unit_status
from .ledger_service import append_binding_event


# =============================================================================
# Candidate resolution
# =============================================================================

def _pool_filter(q, package: Package):
    if package.product and package.product.shared_inventory_pool:
        return q.filter(InventoryUnit.product_id == package.product_id)
    return q.filter(InventoryUnit.package_id == package.id)


def unit_in_pool(unit: InventoryUnit, package: Package) -> bool:
    if package.product and package.product.shared_inventory_pool:
        return unit.product_id == package.product_id
    return unit.package_id == package.id


def is_bound_to(unit: InventoryUnit, order_id: int | None) -> bool:
    if order_id is None:
        return False
    if unit.is_account_based:
        return any(s.assigned_order_id == order_id for s in unit.slots)
    return unit.linked_order_id == order_id


def is_unit_eligible(unit: InventoryUnit, now: datetime) -> bool:
    if unit.is_expired(now):
        return False
    if unit.is_account_based:
        return bool(unit.free_slots())
    return unit.status == "AVAILABLE" and unit.linked_order_id is None


def resolve_candidates(
    package_id: int,
    editing_order_id: int | None = None,
    now: datetime | None = None,
) -> list[InventoryUnit]:
    """
    Units an operator may choose for an order of `package_id`.

    A unit already bound to `editing_order_id` is listed first even when it
    is expired or fully used, so re-opening an order preserves its binding.
    Never picks for the caller.
    """
    current = resolve_now(now)
    package = db.session.query(Package).filter_by(id=package_id).first()
    if not package:
        raise CatalogError("Package not found", details={"package_id": package_id})

    units = _pool_filter(db.session.query(InventoryUnit), package).order_by(InventoryUnit.id.asc()).all()

    bound = []
    eligible = []
    for unit in units:
        if is_bound_to(unit, editing_order_id):
            bound.append(unit)
        elif is_unit_eligible(unit, current):
            eligible.append(unit)
    return bound + eligible


# =============================================================================
# Order side
# =============================================================================

def compute_cogs(unit: InventoryUnit, slot_keys: list[str] | None = None) -> int:
    """Classic: full purchase price. Account: the share of the held slots."""
    price = int(unit.purchase_price or 0)
    if not unit.is_account_based:
        return price
    total = unit.total_slots or len(unit.slots) or 1
    return price * len(slot_keys or []) // total


def derive_order_status(order: Order) -> str:
    """
    COMPLETED with a binding, PROCESSING without. CANCELLED, EXPIRED and
    refunded orders keep their status.
    """
    if order.status in LOCKED_ORDER_STATUSES or order.payment_status == "REFUNDED":
        return order.status
    status = "COMPLETED" if order.inventory_item_id is not None else "PROCESSING"
    if order.status != status:
        order.status = status
    return status


def sync_order_binding(order: Order, now: datetime | None = None) -> Order:
    """
    Rewrite the order-side pointers from what the units actually hold.

    Used after an operator changes a slot directly. Does not commit.
    """
    unit = None
    if order.inventory_item_id is not None:
        unit = db.session.query(InventoryUnit).filter_by(id=order.inventory_item_id).first()

    if unit is not None and is_bound_to(unit, order.id):
        if unit.is_account_based:
            order.inventory_profile_ids = [s.slot_key for s in unit.slots_for_order(order.id)]
            order.order_info = build_order_info(unit, order.inventory_profile_ids, package=order.package)
    else:
        order.inventory_item_id = None
        order.inventory_profile_ids = None

    derive_order_status(order)
    return order


def _require_persisted(order: Order) -> None:
    if order.id is None:
        raise OrderNotFound("Order must be persisted before it can be bound")
    if db.session.query(Order.id).filter_by(id=order.id).first() is None:
        raise OrderNotFound("Order not found", details={"order_id": order.id})


# =============================================================================
# Assign
# =============================================================================

def _dedupe(slot_ids) -> list[str]:
    seen = []
    for key in slot_ids or []:
        key = str(key)
        if key not in seen:
            seen.append(key)
    return seen


def _assign_classic(unit: InventoryUnit, order: Order, slot_keys: list[str], expiry, now, expired: bool) -> list[str]:
    if unit.linked_order_id is not None and unit.linked_order_id != order.id:
        raise SlotAlreadyAssigned(
            "Unit is bound to another order",
            details={"inventory_id": unit.id, "order_id": unit.linked_order_id},
        )
    if unit.linked_order_id is None and unit.status != "AVAILABLE":
        raise SlotAlreadyAssigned(
            f"Unit is {unit.status} and cannot be sold",
            details={"inventory_id": unit.id, "status": unit.status},
        )
    unit.linked_order_id = order.id
    unit.status = "SOLD"
    return []


def _assign_account(unit: InventoryUnit, order: Order, slot_keys: list[str], expiry, now, expired: bool) -> list[str]:
    if not slot_keys:
        raise NoSlotSelected(
            "Account units need at least one slot",
            details={"inventory_id": unit.id},
        )

    chosen: list[InventorySlot] = []
    for key in slot_keys:
        slot = unit.slot_by_key(key)
        if slot is None:
            raise SlotNotFound("Slot not found", details={"inventory_id": unit.id, "slot_id": key})
        owned = slot.assigned_order_id == order.id
        if slot.is_assigned and not owned:
            raise SlotAlreadyAssigned(
                "Slot is assigned to another order",
                details={"inventory_id": unit.id, "slot_id": key, "order_id": slot.assigned_order_id},
            )
        if slot.needs_update and not owned:
            raise SlotNeedsUpdate(
                "Slot is waiting for an update and cannot be assigned",
                details={"inventory_id": unit.id, "slot_id": key},
            )
        if expired and not owned:
            raise UnitExpired(
                "Expired units gain no new slots",
                details={"inventory_id": unit.id, "slot_id": key},
            )
        chosen.append(slot)

    for slot in unit.slots_for_order(order.id):
        if slot.slot_key not in slot_keys:
            slot.clear()

    for slot in chosen:
        if slot.assigned_order_id != order.id:
            slot.assigned_order_id = order.id
            slot.assigned_at = now
        slot.expiry_at = expiry
    return [s.slot_key for s in chosen]


_ASSIGN_HANDLERS = {
    KIND_CLASSIC: _assign_classic,
    KIND_ACCOUNT: _assign_account,
}


def assign(
    order: Order,
    unit_id: int,
    slot_ids: list[str] | None = None,
    *,
    expiry: datetime | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> InventoryUnit:
    """
    Bind `order` to a unit (and, for account units, to `slot_ids`). Does not commit.

    Raises UnitNotFound, SlotNotFound, UnitExpired, NoSlotSelected,
    SlotAlreadyAssigned or SlotNeedsUpdate; nothing is written when it raises
    before the first mutation, and the caller's transaction is rolled back
    otherwise.
    """
    current = resolve_now(now)
    _require_persisted(order)

    unit = get_unit(unit_id, lock=True)
    if order.package is not None and not unit_in_pool(unit, order.package):
        raise CatalogError(
            "Unit is not stocked for this package",
            details={"inventory_id": unit.id, "package_id": order.package_id},
        )

    editing = is_bound_to(unit, order.id)
    expired = unit.is_expired(current)
    if expired and not editing:
        raise UnitExpired("Inventory unit has expired", details={"inventory_id": unit.id})

    if order.inventory_item_id is not None and order.inventory_item_id != unit.id:
        release(order.id, unit_id=order.inventory_item_id, actor=actor, now=current)

    slot_keys = _dedupe(slot_ids)
    held = _ASSIGN_HANDLERS[unit.kind](
        unit,
        order,
        slot_keys,
        expiry or order.expiry_date,
        current,
        expired,
    )
    recompute_unit_status(unit, current)

    order.inventory_item_id = unit.id
    order.inventory_profile_ids = held or None
    order.cogs = compute_cogs(unit, held)
    order.order_info = build_order_info(unit, held, package=order.package)
    derive_order_status(order)

    append_binding_event(
        event_type="binding.assigned",
        event_category="binding",
        order_id=order.id,
        inventory_id=unit.id,
        slot_keys=held,
        actor=actor,
        occurred_at=current,
    )
    return unit


# =============================================================================
# Release
# =============================================================================

def _units_bound_to(order_id: int, order: Order | None) -> list[InventoryUnit]:
    """Indexed lookup of every unit holding the order, plus the order's own pointer."""
    ids = {
        uid for (uid,) in db.session.query(InventoryUnit.id).filter(InventoryUnit.linked_order_id == order_id).all()
    }
    ids.update(
        uid for (uid,) in db.session.query(InventorySlot.unit_id).filter(InventorySlot.assigned_order_id == order_id).all()
    )
    if order is not None and order.inventory_item_id is not None:
        ids.add(order.inventory_item_id)
    if not ids:
        return []
    return (
        lock_for_update(db.session.query(InventoryUnit).filter(InventoryUnit.id.in_(ids)))
        .order_by(InventoryUnit.id.asc())
        .all()
    )


def _release_classic(unit: InventoryUnit, order_id: int, mark_needs_update: bool) -> list[str] | None:
    if unit.linked_order_id != order_id:
        return None
    unit.linked_order_id = None
    if mark_needs_update:
        unit.status = "RESERVED"
        unit.previous_linked_order_id = order_id
    return []


def _release_account(unit: InventoryUnit, order_id: int, mark_needs_update: bool) -> list[str] | None:
    slots = unit.slots_for_order(order_id)
    if not slots:
        return None
    for slot in slots:
        slot.clear()
        if mark_needs_update:
            slot.needs_update = True
            slot.previous_order_id = order_id
    return [s.slot_key for s in slots]


_RELEASE_HANDLERS = {
    KIND_CLASSIC: _release_classic,
    KIND_ACCOUNT: _release_account,
}


def release(
    order_id: int,
    unit_id: int | None = None,
    *,
    mark_needs_update: bool = False,
    actor: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """
    Clear every binding the order holds (on `unit_id` only, when given). Does not commit.

    Idempotent: an order without bindings is a no-op. Returns the released
    bindings as [{"inventory_id": ..., "slot_keys": [...]}].
    mark_needs_update is the warranty-swap path: freed slots are flagged and
    freed classic units are held RESERVED.
    """
    current = resolve_now(now)
    order = db.session.query(Order).filter_by(id=order_id).first()

    if unit_id is not None:
        unit = lock_for_update(db.session.query(InventoryUnit).filter_by(id=unit_id)).first()
        units = [unit] if unit is not None else []
    else:
        units = _units_bound_to(order_id, order)

    released = []
    for unit in units:
        keys = _RELEASE_HANDLERS[unit.kind](unit, order_id, mark_needs_update)
        if keys is None:
            continue
        recompute_unit_status(unit, current)
        released.append({"inventory_id": unit.id, "slot_keys": keys})

    if order is not None and (unit_id is None or order.inventory_item_id == unit_id):
        order.inventory_item_id = None
        order.inventory_profile_ids = None
        derive_order_status(order)

    for item in released:
        append_binding_event(
            event_type="binding.released",
            event_category="binding",
            order_id=order_id,
            inventory_id=item["inventory_id"],
            slot_keys=item["slot_keys"],
            actor=actor,
            occurred_at=current,
            note="Marked for update" if mark_needs_update else None,
        )
    return released


def release_order_binding(
    order_id: int,
    unit_id: int | None = None,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """Release as its own transaction."""
    def _op():
        if db.session.query(Order.id).filter_by(id=order_id).first() is None:
            raise OrderNotFound("Order not found", details={"order_id": order_id})
        released = release(order_id, unit_id=unit_id, actor=actor, now=now)
        db.session.commit()
        return released

    return run_with_retry(_op)


# =============================================================================
# Warranty swap
# =============================================================================

def swap_binding(
    order_id: int,
    new_unit_id: int,
    slot_ids: list[str] | None = None,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Warranty replacement: move the order to another unit or other slots.

    The freed slots are flagged needs_update (previous_order_id kept) and a
    freed classic unit is held RESERVED, so neither is resold before an
    operator has dealt with it.
    """
    def _op():
        current = resolve_now(now)
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound("Order not found", details={"order_id": order_id})
        if order.status == "CANCELLED" or order.payment_status == "REFUNDED":
            raise OrderLocked(
                "Cancelled or refunded orders cannot be swapped",
                details={"order_id": order_id, "status": order.status},
            )

        previous = release(order.id, mark_needs_update=True, actor=actor, now=current)
        if not previous:
            raise BindingError("Order has no binding to swap", details={"order_id": order_id})

        unit = assign(order, new_unit_id, slot_ids, expiry=order.expiry_date, actor=actor, now=current)

        append_binding_event(
            event_type="binding.swapped",
            event_category="binding",
            order_id=order.id,
            inventory_id=unit.id,
            slot_keys=order.inventory_profile_ids,
            actor=actor,
            occurred_at=current,
            payload={"previous": previous},
        )
        db.session.commit()
        return order

    return run_with_retry(_op)
