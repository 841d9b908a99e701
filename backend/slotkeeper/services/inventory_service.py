# Overview: Inventory Store operations: stock intake, unit status, slot maintenance and unit deletion.

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import BindingError, CatalogError, SlotNotFound, UnitNotFound
from ..models import InventorySlot, InventoryUnit, Order, Package, Product
from ..models.inventory import KIND_ACCOUNT, KIND_CLASSIC
from ..validation import ConflictError
from slotkeeper.time_utils import add_months, resolve_now
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_binding_event
from .sequence_service import next_code


def slot_key_for(position: int) -> str:
    return f"slot-{position}"


def _new_slot(position: int) -> InventorySlot:
    return InventorySlot(
        slot_key=slot_key_for(position),
        position=position,
        label=f"Slot {position}",
        needs_update=False,
    )


def default_slot_count(package: Package | None, requested: int | None = None) -> int:
    """Requested count, else the package default, else DEFAULT_ACCOUNT_SLOTS. Never below 1."""
    value = requested
    if value is None and package is not None:
        value = package.default_slots
    if value is None:
        value = current_app.config.get("DEFAULT_ACCOUNT_SLOTS", 5)
    return max(1, int(value))


def get_unit(unit_id: int, *, lock: bool = False) -> InventoryUnit:
    q = db.session.query(InventoryUnit).filter_by(id=unit_id)
    if lock:
        q = lock_for_update(q)
    unit = q.first()
    if not unit:
        raise UnitNotFound("Inventory unit not found", details={"inventory_id": unit_id})
    return unit


# =============================================================================
# Status
# =============================================================================

def _classic_status(unit: InventoryUnit, now: datetime) -> str:
    if unit.linked_order_id is not None:
        return "SOLD"
    if unit.status == "RESERVED":
        return "RESERVED"
    if unit.expiry_date < now:
        return "EXPIRED"
    return "AVAILABLE"


def _account_status(unit: InventoryUnit, now: datetime) -> str:
    if unit.expiry_date < now and not any(s.is_assigned for s in unit.slots):
        return "EXPIRED"
    if unit.free_slots():
        return "AVAILABLE"
    return "SOLD"


_STATUS_HANDLERS = {
    KIND_CLASSIC: _classic_status,
    KIND_ACCOUNT: _account_status,
}


def recompute_unit_status(unit: InventoryUnit, now: datetime | None = None) -> str:
    """
    Derive status from bindings and the clock. Does not commit.

    Renewed units come back from EXPIRED here, since only the expiry date
    and the bindings are consulted.
    """
    now = resolve_now(now)
    status = _STATUS_HANDLERS[unit.kind](unit, now)
    if unit.status != status:
        unit.status = status
    return status


def refresh_unit_status(unit_id: int, now: datetime | None = None) -> InventoryUnit:
    def _op():
        unit = get_unit(unit_id, lock=True)
        recompute_unit_status(unit, now)
        db.session.commit()
        return unit

    return run_with_retry(_op)


# =============================================================================
# Stock intake
# =============================================================================

def _intake_expiry(product: Product, package: Package | None, purchase_date: datetime, pool_warranty_months: int | None) -> datetime:
    if product.shared_inventory_pool:
        months = pool_warranty_months or 1
    else:
        months = (package.warranty_months if package else None) or 1
    return add_months(purchase_date, months)


def create_unit(
    *,
    product_id: int,
    package_id: int | None = None,
    purchase_date: datetime | None = None,
    expiry_date: datetime | None = None,
    purchase_price: int = 0,
    is_account_based: bool | None = None,
    total_slots: int | None = None,
    pool_warranty_months: int | None = None,
    product_info: str | None = None,
    account_data: dict | None = None,
    notes: str | None = None,
    code: str | None = None,
    now: datetime | None = None,
) -> InventoryUnit:
    """
    Stock intake.

    - expiry_date defaults to purchase + package warranty, or purchase +
      pool_warranty_months (1 month if unset) for pooled products.
    - Account units get slot-1..slot-N; N comes from total_slots, the
      package default_slots, then DEFAULT_ACCOUNT_SLOTS.
    """
    def _op():
        current = resolve_now(now)

        product = db.session.query(Product).filter_by(id=product_id).first()
        if not product:
            raise CatalogError("Product not found", details={"product_id": product_id})

        package = None
        if package_id is not None:
            package = db.session.query(Package).filter_by(id=package_id).first()
            if not package:
                raise CatalogError("Package not found", details={"package_id": package_id})
            if package.product_id != product.id:
                raise CatalogError(
                    "Package does not belong to product",
                    details={"package_id": package_id, "product_id": product_id},
                )
        elif not product.shared_inventory_pool:
            raise CatalogError(
                "package_id is required unless the product uses a shared pool",
                details={"product_id": product_id},
            )

        if purchase_price is not None and int(purchase_price) < 0:
            raise CatalogError("purchase_price must be >= 0")

        if code and db.session.query(InventoryUnit.id).filter(InventoryUnit.code == code.strip()).first():
            raise ConflictError(f"Code {code!r} already exists.")

        account_based = bool(is_account_based) or bool(package and package.is_account_based)
        bought = purchase_date or current

        unit_code = (code or "").strip() or next_code(
            kind="INVENTORY",
            prefix=current_app.config.get("INVENTORY_CODE_PREFIX", "KHO"),
        )

        unit = InventoryUnit(
            code=unit_code,
            product_id=product.id,
            package_id=package.id if package else None,
            purchase_date=bought,
            expiry_date=expiry_date or _intake_expiry(product, package, bought, pool_warranty_months),
            purchase_price=int(purchase_price or 0),
            status="AVAILABLE",
            is_account_based=account_based,
            pool_warranty_months=pool_warranty_months,
            product_info=product_info,
            account_data=account_data or None,
            notes=notes,
        )
        if account_based:
            count = default_slot_count(package, total_slots)
            unit.total_slots = count
            unit.slots = [_new_slot(i) for i in range(1, count + 1)]

        recompute_unit_status(unit, current)
        db.session.add(unit)
        db.session.flush()

        append_binding_event(
            event_type="inventory.created",
            event_category="inventory",
            inventory_id=unit.id,
            occurred_at=current,
            note=f"Unit {unit.code} received",
        )
        db.session.commit()
        return unit

    return run_with_retry(_op)


def resize_unit_slots(unit: InventoryUnit, desired_total: int) -> bool:
    """
    Change the slot count of an account unit. Does not commit.

    Held slots (assigned or waiting for an update) are never removed, so the
    resulting total can exceed desired_total.
    """
    desired_total = max(1, int(desired_total))
    slots = list(unit.slots)
    if len(slots) == desired_total and unit.total_slots == desired_total:
        return False

    if len(slots) < desired_total:
        used_keys = {s.slot_key for s in slots}
        position = max((s.position for s in slots), default=0)
        while len(slots) < desired_total:
            position += 1
            if slot_key_for(position) in used_keys:
                continue
            slot = _new_slot(position)
            unit.slots.append(slot)
            slots.append(slot)
    else:
        removable = [s for s in reversed(slots) if not s.is_assigned and not s.needs_update]
        for slot in removable[: len(slots) - desired_total]:
            unit.slots.remove(slot)

    unit.total_slots = len(unit.slots)
    return True


# =============================================================================
# Delivery text
# =============================================================================

def _columns_for(unit: InventoryUnit, package: Package | None = None) -> list[dict]:
    pkg = package or unit.package
    if pkg and pkg.account_columns:
        return list(pkg.account_columns)
    return list((unit.account_data or {}).get("_columns") or [])


def build_order_info(unit: InventoryUnit, slot_keys: list[str] | None = None, package: Package | None = None) -> str:
    """
    Delivery text for an order bound to `unit`.

    Classic units deliver product_info. Account units list, per chosen slot,
    the account columns flagged include_in_order_info, then a usage footer.
    """
    if not unit.is_account_based:
        return unit.product_info or ""

    columns = [c for c in _columns_for(unit, package) if c.get("include_in_order_info")]
    data = unit.account_data or {}
    lines: list[str] = []

    def _column_lines(col):
        value = data.get(col.get("id"))
        text = "" if value is None else str(value)
        if not text.strip():
            return []
        title = col.get("title") or col.get("id")
        if "\n" in text:
            return [f"{title}:"] + text.split("\n")
        return [f"{title}: {text}"]

    if slot_keys:
        for index, key in enumerate(slot_keys, start=1):
            slot = unit.slot_by_key(key)
            lines.append(f"--- Slot {index}: {slot.label if slot else key} ---")
            for col in columns:
                lines.extend(_column_lines(col))
            lines.append("")
        usage = unit.slot_usage()
        if usage["total"] > 0:
            lines.append(f"Tổng slot: {len(slot_keys)} | Đã dùng: {usage['used']}/{usage['total']}")
    else:
        for col in columns:
            lines.extend(_column_lines(col))

    return "\n".join(lines)


# =============================================================================
# Operator maintenance
# =============================================================================

def reserve_unit(unit_id: int, *, actor: str | None = None, now: datetime | None = None) -> InventoryUnit:
    """Hold an unbound classic unit out of sale."""
    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)
        if unit.is_account_based:
            raise BindingError(
                "Account units are held per slot and cannot be reserved",
                details={"inventory_id": unit_id},
            )
        if unit.linked_order_id is not None:
            raise BindingError(
                "Unit is bound to an order",
                details={"inventory_id": unit_id, "order_id": unit.linked_order_id},
            )
        unit.status = "RESERVED"
        append_binding_event(
            event_type="inventory.reserved",
            event_category="inventory",
            inventory_id=unit.id,
            actor=actor,
            occurred_at=current,
        )
        db.session.commit()
        return unit

    return run_with_retry(_op)


def unreserve_unit(unit_id: int, *, actor: str | None = None, now: datetime | None = None) -> InventoryUnit:
    """Return a RESERVED unit to sale and forget the order it was swapped out of."""
    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)
        if unit.status != "RESERVED":
            return unit
        unit.status = "AVAILABLE"
        unit.previous_linked_order_id = None
        recompute_unit_status(unit, current)
        append_binding_event(
            event_type="inventory.unreserved",
            event_category="inventory",
            inventory_id=unit.id,
            actor=actor,
            occurred_at=current,
        )
        db.session.commit()
        return unit

    return run_with_retry(_op)


def clear_slot_needs_update(unit_id: int, slot_key: str, *, actor: str | None = None, now: datetime | None = None) -> InventoryUnit:
    """Operator confirms a swapped-out slot was reset on the underlying service."""
    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)
        slot = unit.slot_by_key(slot_key)
        if not slot:
            raise SlotNotFound("Slot not found", details={"inventory_id": unit_id, "slot_id": slot_key})
        slot.needs_update = False
        slot.previous_order_id = None
        recompute_unit_status(unit, current)
        append_binding_event(
            event_type="slot.update_cleared",
            event_category="inventory",
            inventory_id=unit.id,
            slot_keys=[slot_key],
            actor=actor,
            occurred_at=current,
        )
        db.session.commit()
        return unit

    return run_with_retry(_op)


def release_slot(unit_id: int, slot_key: str, *, actor: str | None = None, now: datetime | None = None) -> InventoryUnit:
    """
    Operator release of one slot. The owning order loses the slot key and,
    if it held nothing else on the unit, its unit pointer.
    """
    from .allocation_service import sync_order_binding

    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)
        slot = unit.slot_by_key(slot_key)
        if not slot:
            raise SlotNotFound("Slot not found", details={"inventory_id": unit_id, "slot_id": slot_key})
        order_id = slot.assigned_order_id
        if order_id is None:
            return unit

        slot.clear()
        recompute_unit_status(unit, current)

        order = db.session.query(Order).filter_by(id=order_id).first()
        if order is not None:
            sync_order_binding(order, current)

        append_binding_event(
            event_type="binding.released",
            event_category="binding",
            order_id=order_id,
            inventory_id=unit.id,
            slot_keys=[slot_key],
            actor=actor,
            occurred_at=current,
            note="Operator slot release",
        )
        db.session.commit()
        return unit

    return run_with_retry(_op)


def delete_unit(unit_id: int, *, actor: str | None = None, now: datetime | None = None) -> list[int]:
    """
    Release every binding on the unit, then delete it.

    Returns the ids of orders that lost their binding.
    """
    from .allocation_service import release

    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)

        bound_order_ids = set()
        if unit.linked_order_id is not None:
            bound_order_ids.add(unit.linked_order_id)
        bound_order_ids.update(s.assigned_order_id for s in unit.slots if s.is_assigned)
        bound_order_ids.update(
            oid for (oid,) in db.session.query(Order.id).filter(Order.inventory_item_id == unit.id).all()
        )

        for order_id in sorted(bound_order_ids):
            release(order_id, unit_id=unit.id, actor=actor, now=current)

        append_binding_event(
            event_type="inventory.deleted",
            event_category="inventory",
            inventory_id=unit.id,
            actor=actor,
            occurred_at=current,
            note=f"Unit {unit.code} deleted",
            payload={"released_order_ids": sorted(bound_order_ids)},
        )
        db.session.flush()
        db.session.delete(unit)
        db.session.commit()
        return sorted(bound_order_ids)

    return run_with_retry(_op)


def list_units(
    *,
    product_id: int | None = None,
    package_id: int | None = None,
    status: str | None = None,
) -> list[InventoryUnit]:
    q = db.session.query(InventoryUnit)
    if product_id is not None:
        q = q.filter(InventoryUnit.product_id == product_id)
    if package_id is not None:
        q = q.filter(InventoryUnit.package_id == package_id)
    if status:
        q = q.filter(InventoryUnit.status == status)
    return q.order_by(InventoryUnit.id.asc()).all()
