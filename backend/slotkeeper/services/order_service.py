# Overview: Order-Binding Coordinator: create, update, cancel, refund and delete orders with their bindings.

"""
Order-Binding Coordinator

State machine (binding-relevant subset):

    PROCESSING --(bind unit/slot)--> COMPLETED
    COMPLETED  --(release binding)--> PROCESSING
    COMPLETED|PROCESSING --(sweep: expiry reached)--> EXPIRED   (renewal reopens)
    ANY --(manual cancel)--> CANCELLED                          (releases)
    ANY --(payment refunded)--> CANCELLED                       (releases)

Every public operation is one transaction: the order row, the unit/slot rows
and the binding events commit together or not at all.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import BindingError, CatalogError, InconsistentBinding, OrderLocked, OrderNotFound
from ..models import Customer, InventorySlot, InventoryUnit, Order, Package
from ..models.orders import PAYMENT_STATUSES
from ..validation import ConflictError
from slotkeeper.time_utils import add_months, resolve_now
from .allocation_service import assign, derive_order_status, is_bound_to, release, unit_in_pool
from .catalog_service import get_customer, get_package, sale_price_for
from .concurrency import lock_for_update, run_with_retry
from .expiry_service import compute_order_expiry, expiry_after_package_change, sweep_locked
from .inventory_service import recompute_unit_status
from .ledger_service import append_binding_event
from .sequence_service import next_code


ORDER_PATCH_FIELDS = {
    "customer_id",
    "package_id",
    "purchase_date",
    "inventory_item_id",
    "slot_ids",
    "use_custom_price",
    "custom_price",
    "custom_expiry_date",
    "status",
    "payment_status",
    "notes",
}


def get_order(order_id: int, *, lock: bool = False) -> Order:
    q = db.session.query(Order).filter_by(id=order_id)
    if lock:
        q = lock_for_update(q)
    order = q.first()
    if not order:
        raise OrderNotFound("Order not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    status: str | None = None,
    customer_id: int | None = None,
    inventory_item_id: int | None = None,
) -> list[Order]:
    q = db.session.query(Order)
    if status:
        q = q.filter(Order.status == status)
    if customer_id is not None:
        q = q.filter(Order.customer_id == customer_id)
    if inventory_item_id is not None:
        q = q.filter(Order.inventory_item_id == inventory_item_id)
    return q.order_by(Order.id.desc()).all()


def snapshot_sale_price(package: Package, customer: Customer, use_custom_price: bool, custom_price: int | None) -> int:
    if use_custom_price and custom_price is not None:
        return int(custom_price)
    return sale_price_for(package, customer)


def _sweep_enabled() -> bool:
    return bool(current_app.config.get("SWEEP_BEFORE_ALLOCATE", True))


def _sync_slot_expiry(order: Order) -> None:
    """Keep every held slot's expiry_at in lockstep with the order."""
    slots = db.session.query(InventorySlot).filter(InventorySlot.assigned_order_id == order.id).all()
    for slot in slots:
        if slot.expiry_at != order.expiry_date:
            slot.expiry_at = order.expiry_date


def _force_cancel(order: Order, current: datetime, actor: str | None, reason: str) -> list[dict]:
    order.status = "CANCELLED"
    released = release(order.id, actor=actor, now=current)
    append_binding_event(
        event_type="order.cancelled",
        event_category="order",
        order_id=order.id,
        actor=actor,
        occurred_at=current,
        note=reason,
        payload={"released": released},
    )
    return released


def _apply_payment_status(order: Order, payment_status: str, current: datetime, actor: str | None) -> None:
    if payment_status not in PAYMENT_STATUSES:
        raise BindingError("Invalid payment_status", details={"payment_status": payment_status})
    order.payment_status = payment_status
    if payment_status == "REFUNDED" and order.status != "CANCELLED":
        _force_cancel(order, current, actor, "Refunded")
    elif payment_status == "REFUNDED":
        release(order.id, actor=actor, now=current)


def _apply_status(order: Order, status: str, current: datetime, actor: str | None) -> None:
    if status == order.status:
        return
    if order.payment_status == "REFUNDED":
        raise OrderLocked(
            "Refunded orders stay cancelled",
            details={"order_id": order.id, "status": order.status},
        )
    if order.status == "CANCELLED":
        raise OrderLocked(
            "Cancelled orders cannot change status",
            details={"order_id": order.id, "requested": status},
        )
    if status == "CANCELLED":
        _force_cancel(order, current, actor, "Cancelled by operator")
    elif status == "EXPIRED":
        order.status = "EXPIRED"
    else:
        # Operator lifts a forced state; derivation decides between PROCESSING and COMPLETED
        order.status = "PROCESSING"
        derive_order_status(order)


# =============================================================================
# Create
# =============================================================================

def create_order(
    *,
    customer_id: int,
    package_id: int,
    purchase_date: datetime | None = None,
    inventory_item_id: int | None = None,
    slot_ids: list[str] | None = None,
    use_custom_price: bool = False,
    custom_price: int | None = None,
    custom_expiry_date: datetime | None = None,
    payment_status: str = "UNPAID",
    notes: str | None = None,
    code: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Validate the catalog refs and the unit/slot choice, bind, snapshot prices
    and persist the order with its derived status.
    """
    def _op():
        current = resolve_now(now)
        if inventory_item_id is not None and _sweep_enabled():
            sweep_locked(current)

        package = get_package(package_id)
        customer = get_customer(customer_id)
        if payment_status not in PAYMENT_STATUSES:
            raise BindingError("Invalid payment_status", details={"payment_status": payment_status})

        if code and db.session.query(Order.id).filter(Order.code == code.strip()).first():
            raise ConflictError(f"Code {code!r} already exists.")

        bought = purchase_date or current
        order = Order(
            code=(code or "").strip() or next_code(
                kind="ORDER",
                prefix=current_app.config.get("ORDER_CODE_PREFIX", "DH"),
            ),
            customer_id=customer.id,
            package_id=package.id,
            purchase_date=bought,
            expiry_date=compute_order_expiry(bought, package.warranty_months, (), custom_expiry_date),
            custom_expiry_date=custom_expiry_date,
            status="PROCESSING",
            payment_status="UNPAID",
            use_custom_price=bool(use_custom_price),
            custom_price=custom_price,
            sale_price=snapshot_sale_price(package, customer, bool(use_custom_price), custom_price),
            notes=notes,
            created_by=actor,
        )
        db.session.add(order)
        db.session.flush()

        if inventory_item_id is not None:
            assign(order, inventory_item_id, slot_ids, expiry=order.expiry_date, actor=actor, now=current)

        _apply_payment_status(order, payment_status, current, actor)
        derive_order_status(order)

        append_binding_event(
            event_type="order.created",
            event_category="order",
            order_id=order.id,
            inventory_id=order.inventory_item_id,
            slot_keys=order.inventory_profile_ids,
            actor=actor,
            occurred_at=current,
            note=f"Order {order.code} created",
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# Update
# =============================================================================

def update_order(
    order_id: int,
    *,
    patch: dict,
    actor: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Apply an edit.

    - Unit changed: release the old binding, then assign the new one.
      inventory_item_id=None unbinds.
    - sale_price is re-snapshotted only when package, customer, the custom
      price toggle or the custom price changed.
    - A package or purchase date change recomputes the expiry, except that
      an order with renewals keeps its latest renewed expiry.
    """
    unknown = set(patch) - ORDER_PATCH_FIELDS
    if unknown:
        raise BindingError("Unknown order fields", details={"fields": sorted(unknown)})

    def _op():
        current = resolve_now(now)
        binding_edit = "inventory_item_id" in patch or "slot_ids" in patch
        target_unit_id = patch.get("inventory_item_id")
        if binding_edit and target_unit_id is not None and _sweep_enabled():
            sweep_locked(current)

        order = get_order(order_id, lock=True)
        previous = {
            "package_id": order.package_id,
            "customer_id": order.customer_id,
            "use_custom_price": bool(order.use_custom_price),
            "custom_price": order.custom_price,
            "purchase_date": order.purchase_date,
            "expiry_date": order.expiry_date,
        }

        if "customer_id" in patch:
            order.customer = get_customer(patch["customer_id"])
            order.customer_id = order.customer.id
        if "package_id" in patch:
            order.package = get_package(patch["package_id"])
            order.package_id = order.package.id
        if "purchase_date" in patch and patch["purchase_date"] is not None:
            order.purchase_date = patch["purchase_date"]
        if "use_custom_price" in patch:
            order.use_custom_price = bool(patch["use_custom_price"])
        if "custom_price" in patch:
            order.custom_price = patch["custom_price"]
        if "notes" in patch:
            order.notes = patch["notes"]

        package = get_package(order.package_id)
        customer = get_customer(order.customer_id)

        # Expiry
        if "custom_expiry_date" in patch:
            order.custom_expiry_date = patch["custom_expiry_date"]
        expiry_inputs_changed = (
            order.package_id != previous["package_id"]
            or order.purchase_date != previous["purchase_date"]
            or "custom_expiry_date" in patch
        )
        if expiry_inputs_changed:
            if order.renewals or order.custom_expiry_date is not None:
                order.expiry_date = expiry_after_package_change(order, package.warranty_months)
            else:
                order.expiry_date = add_months(order.purchase_date, int(package.warranty_months or 0))

        # Price snapshot
        pricing_changed = (
            order.package_id != previous["package_id"]
            or order.customer_id != previous["customer_id"]
            or bool(order.use_custom_price) != previous["use_custom_price"]
            or (order.use_custom_price and order.custom_price != previous["custom_price"])
        )
        if pricing_changed:
            order.sale_price = snapshot_sale_price(package, customer, bool(order.use_custom_price), order.custom_price)

        # Forced states
        if "payment_status" in patch:
            _apply_payment_status(order, patch["payment_status"], current, actor)
        if "status" in patch:
            _apply_status(order, patch["status"], current, actor)

        # Binding
        if binding_edit:
            new_unit_id = patch.get("inventory_item_id", order.inventory_item_id)
            if new_unit_id is None:
                release(order.id, actor=actor, now=current)
                order.cogs = None
                order.order_info = None
            else:
                if order.status == "CANCELLED":
                    raise OrderLocked(
                        "Cancelled orders cannot be bound",
                        details={"order_id": order.id},
                    )
                if order.inventory_item_id is not None and order.inventory_item_id != new_unit_id:
                    release(order.id, actor=actor, now=current)
                slot_ids = patch.get("slot_ids")
                if slot_ids is None and order.inventory_item_id == new_unit_id:
                    slot_ids = order.inventory_profile_ids
                assign(order, new_unit_id, slot_ids, expiry=order.expiry_date, actor=actor, now=current)
        elif order.package_id != previous["package_id"] and order.inventory_item_id is not None:
            # The kept unit must still be stocked for the new package
            bound_unit = db.session.query(InventoryUnit).filter_by(id=order.inventory_item_id).first()
            if bound_unit is not None and not unit_in_pool(bound_unit, package):
                raise CatalogError(
                    "Bound unit is not stocked for the new package; choose a unit in the same edit",
                    details={"inventory_id": bound_unit.id, "package_id": package.id},
                )

        if order.expiry_date != previous["expiry_date"]:
            _sync_slot_expiry(order)
        derive_order_status(order)

        append_binding_event(
            event_type="order.updated",
            event_category="order",
            order_id=order.id,
            inventory_id=order.inventory_item_id,
            slot_keys=order.inventory_profile_ids,
            actor=actor,
            occurred_at=current,
            payload={"fields": sorted(patch)},
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# Cancel / refund
# =============================================================================

def cancel_order(order_id: int, *, actor: str | None = None, now: datetime | None = None) -> Order:
    def _op():
        current = resolve_now(now)
        order = get_order(order_id, lock=True)
        if order.status != "CANCELLED":
            _force_cancel(order, current, actor, "Cancelled by operator")
        else:
            release(order.id, actor=actor, now=current)
        db.session.commit()
        return order

    return run_with_retry(_op)


def set_payment_status(order_id: int, payment_status: str, *, actor: str | None = None, now: datetime | None = None) -> Order:
    """REFUNDED forces CANCELLED and releases the binding."""
    def _op():
        current = resolve_now(now)
        order = get_order(order_id, lock=True)
        _apply_payment_status(order, payment_status, current, actor)
        derive_order_status(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# Delete
# =============================================================================

def delete_order(order_id: int, *, actor: str | None = None, now: datetime | None = None) -> dict:
    """
    Release everything the order holds, then delete it.

    Slots on expired account units are still released, but the operator is
    warned that the seat must be cleared on the underlying service as well.
    Never blocks.
    """
    def _op():
        current = resolve_now(now)
        order = get_order(order_id, lock=True)

        warnings = []
        held_units = (
            db.session.query(InventoryUnit)
            .join(InventorySlot, InventorySlot.unit_id == InventoryUnit.id)
            .filter(InventorySlot.assigned_order_id == order.id)
            .distinct()
            .order_by(InventoryUnit.id.asc())
            .all()
        )
        for unit in held_units:
            if unit.is_expired(current):
                warnings.append({
                    "inventory_id": unit.id,
                    "inventory_code": unit.code,
                    "slot_ids": [s.slot_key for s in unit.slots_for_order(order.id)],
                    "message": f"Unit {unit.code} has expired; clear the slot on the account manually",
                })

        released = release(order.id, actor=actor, now=current)
        db.session.flush()

        append_binding_event(
            event_type="order.deleted",
            event_category="order",
            order_id=order.id,
            actor=actor,
            occurred_at=current,
            note=f"Order {order.code} deleted",
            payload={"released": released, "warnings": warnings},
        )
        code = order.code
        db.session.delete(order)
        db.session.commit()

        if warnings:
            current_app.logger.warning(
                "Deleted order %s held slots on expired units: %s",
                code,
                ", ".join(w["inventory_code"] for w in warnings),
            )
        return {"deleted": True, "order_id": order_id, "released": released, "warnings": warnings}

    return run_with_retry(_op)


# =============================================================================
# Consistency
# =============================================================================

def _binding_problems(order: Order) -> list[dict]:
    problems = []

    linked_units = {
        uid for (uid,) in db.session.query(InventoryUnit.id).filter(InventoryUnit.linked_order_id == order.id).all()
    }
    slot_keys_by_unit: dict[int, set[str]] = {}
    for unit_id, slot_key in (
        db.session.query(InventorySlot.unit_id, InventorySlot.slot_key)
        .filter(InventorySlot.assigned_order_id == order.id)
        .all()
    ):
        slot_keys_by_unit.setdefault(unit_id, set()).add(slot_key)
    held_units = linked_units | set(slot_keys_by_unit)

    if order.inventory_item_id is None:
        for unit_id in sorted(held_units):
            problems.append({"problem": "unit_references_unbound_order", "inventory_id": unit_id})
    else:
        unit = db.session.query(InventoryUnit).filter_by(id=order.inventory_item_id).first()
        if unit is None:
            problems.append({"problem": "order_references_missing_unit", "inventory_id": order.inventory_item_id})
        elif not is_bound_to(unit, order.id):
            problems.append({"problem": "unit_does_not_reference_order", "inventory_id": unit.id})
        elif unit.is_account_based:
            claimed = set(order.inventory_profile_ids or [])
            held = slot_keys_by_unit.get(unit.id, set())
            if claimed != held:
                problems.append({
                    "problem": "slot_mismatch",
                    "inventory_id": unit.id,
                    "order_slot_ids": sorted(claimed),
                    "unit_slot_ids": sorted(held),
                })
        for unit_id in sorted(held_units - {order.inventory_item_id}):
            problems.append({"problem": "unit_references_order_elsewhere", "inventory_id": unit_id})

    if order.status == "COMPLETED" and order.inventory_item_id is None:
        problems.append({"problem": "completed_without_binding"})
    if order.status == "PROCESSING" and order.inventory_item_id is not None:
        problems.append({"problem": "processing_with_binding"})
    return problems


def check_binding_consistency(order_id: int) -> dict:
    """
    Compare both sides of the order's binding. Raises InconsistentBinding
    with the list of problems; never picks a side.
    """
    order = get_order(order_id)
    problems = _binding_problems(order)
    if problems:
        current_app.logger.warning("Inconsistent binding for order %s: %s", order.code, problems)
        raise InconsistentBinding(
            f"Order {order.code} and its inventory disagree",
            details={"order_id": order.id, "problems": problems},
        )
    return {"order_id": order.id, "consistent": True}


def check_all_bindings() -> list[dict]:
    """Report every inconsistent order; used by the bindings check command."""
    report = []
    for order in db.session.query(Order).order_by(Order.id.asc()).all():
        try:
            check_binding_consistency(order.id)
        except InconsistentBinding as e:
            report.append(e.details)
    return report


def find_orphaned_bindings() -> list[dict]:
    """Slots and classic units that point at orders which no longer exist."""
    orphans = []
    slots = (
        db.session.query(InventorySlot)
        .outerjoin(Order, Order.id == InventorySlot.assigned_order_id)
        .filter(InventorySlot.assigned_order_id.isnot(None))
        .filter(Order.id.is_(None))
        .order_by(InventorySlot.unit_id.asc(), InventorySlot.position.asc())
        .all()
    )
    for slot in slots:
        orphans.append({"inventory_id": slot.unit_id, "slot_id": slot.slot_key, "order_id": slot.assigned_order_id})

    units = (
        db.session.query(InventoryUnit)
        .outerjoin(Order, Order.id == InventoryUnit.linked_order_id)
        .filter(InventoryUnit.linked_order_id.isnot(None))
        .filter(Order.id.is_(None))
        .order_by(InventoryUnit.id.asc())
        .all()
    )
    for unit in units:
        orphans.append({"inventory_id": unit.id, "slot_id": None, "order_id": unit.linked_order_id})
    return orphans


def release_orphaned_bindings(*, actor: str | None = None, now: datetime | None = None) -> list[dict]:
    """Operator-triggered clean-up of the bindings find_orphaned_bindings reports."""
    def _op():
        current = resolve_now(now)
        orphans = find_orphaned_bindings()
        touched: dict[int, InventoryUnit] = {}
        for item in orphans:
            unit = touched.get(item["inventory_id"])
            if unit is None:
                unit = lock_for_update(db.session.query(InventoryUnit).filter_by(id=item["inventory_id"])).first()
                touched[unit.id] = unit
            if item["slot_id"] is None:
                unit.linked_order_id = None
            else:
                unit.slot_by_key(item["slot_id"]).clear()
            append_binding_event(
                event_type="binding.orphan_released",
                event_category="binding",
                order_id=item["order_id"],
                inventory_id=unit.id,
                slot_keys=[item["slot_id"]] if item["slot_id"] else None,
                actor=actor,
                occurred_at=current,
            )
        for unit in touched.values():
            recompute_unit_status(unit, current)
        db.session.commit()
        return orphans

    return run_with_retry(_op)
