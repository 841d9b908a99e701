# Overview: Renewal Ledger: order and unit renewals, and per-renewal payment correction.

from __future__ import annotations

import math
from datetime import datetime
from numbers import Number

from ..extensions import db
from ..errors import BindingError, CatalogError, InvalidRenewalMonths, OrderLocked, OrderNotFound
from ..models import Customer, InventoryUnit, Order, Package, Renewal
from ..models.orders import PAYMENT_STATUSES
from slotkeeper.time_utils import add_months, resolve_now
from .allocation_service import derive_order_status
from .catalog_service import sale_price_for
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import get_unit, recompute_unit_status
from .ledger_service import append_binding_event


def coerce_months(value) -> int:
    """
    Floor to a whole number of months, minimum 1.

    Booleans, None, NaN/inf and text that is not a number raise
    InvalidRenewalMonths.
    """
    if value is None or isinstance(value, bool):
        raise InvalidRenewalMonths("months must be a number", details={"months": value})
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise InvalidRenewalMonths("months must be a number", details={"months": value})
    if not isinstance(value, Number):
        raise InvalidRenewalMonths("months must be a number", details={"months": repr(value)})
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        raise InvalidRenewalMonths("months must be finite", details={"months": str(value)})
    return max(1, int(math.floor(value)))


def extend_expiry(current_expiry: datetime, months: int, now: datetime) -> datetime:
    """Extend from the current expiry while live, from now once lapsed."""
    return add_months(max(current_expiry, now), months)


def renew_order(
    order_id: int,
    *,
    months=None,
    amount: int | None = None,
    package_id: int | None = None,
    payment_status: str | None = None,
    use_custom_price: bool = False,
    custom_price: int | None = None,
    note: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> Renewal:
    """
    Extend an order and append a Renewal.

    - months defaults to the renewal package's warranty (the order's package
      unless package_id is given); amount defaults to the customer-type
      price or the custom price.
    - The order's package and payment_status are not touched.
    - Every slot the order holds follows the new expiry.
    - An EXPIRED order reopens: COMPLETED if still bound, else PROCESSING.
    """
    def _op():
        current = resolve_now(now)
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound("Order not found", details={"order_id": order_id})
        if order.status == "CANCELLED" or order.payment_status == "REFUNDED":
            raise OrderLocked(
                "Cancelled or refunded orders cannot be renewed",
                details={"order_id": order.id, "status": order.status, "payment_status": order.payment_status},
            )

        package = db.session.query(Package).filter_by(id=package_id or order.package_id).first()
        if not package:
            raise CatalogError("Package not found", details={"package_id": package_id or order.package_id})

        safe_months = coerce_months(package.warranty_months if months is None else months)

        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            raise BindingError("Invalid payment_status", details={"payment_status": payment_status})

        custom = bool(use_custom_price) and (custom_price or 0) > 0
        if amount is not None:
            price = max(0, int(amount))
        elif custom:
            price = max(0, int(custom_price))
        else:
            customer = db.session.query(Customer).filter_by(id=order.customer_id).first()
            price = sale_price_for(package, customer)

        previous = order.expiry_date
        new_expiry = extend_expiry(previous, safe_months, current)

        renewal = Renewal(
            order=order,
            months=safe_months,
            amount=price,
            package_id=package.id,
            use_custom_price=custom,
            previous_expiry_date=previous,
            new_expiry_date=new_expiry,
            payment_status=payment_status or order.payment_status,
            note=note,
            created_by=created_by or "system",
            created_at=current,
        )
        db.session.add(renewal)

        order.expiry_date = new_expiry
        order.custom_expiry_date = None

        touched_slots = []
        if order.inventory_item_id is not None:
            unit = _bound_unit(order)
            if unit is not None and unit.is_account_based:
                for slot in unit.slots_for_order(order.id):
                    slot.expiry_at = new_expiry
                    touched_slots.append(slot.slot_key)
                recompute_unit_status(unit, current)

        if order.status == "EXPIRED":
            order.status = "COMPLETED" if order.inventory_item_id is not None else "PROCESSING"
        derive_order_status(order)

        db.session.flush()
        append_binding_event(
            event_type="order.renewed",
            event_category="renewal",
            order_id=order.id,
            inventory_id=order.inventory_item_id,
            slot_keys=touched_slots or None,
            actor=created_by,
            occurred_at=current,
            payload={
                "renewal_id": renewal.id,
                "months": safe_months,
                "previous_expiry_date": previous.isoformat(),
                "new_expiry_date": new_expiry.isoformat(),
            },
        )
        db.session.commit()
        return renewal

    return run_with_retry(_op)


def _bound_unit(order: Order) -> InventoryUnit | None:
    return lock_for_update(db.session.query(InventoryUnit).filter_by(id=order.inventory_item_id)).first()


def renew_inventory(
    unit_id: int,
    *,
    months,
    amount: int = 0,
    payment_status: str = "UNPAID",
    note: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> Renewal:
    """Extend a unit's own expiry (supplier-side renewal) and append a Renewal."""
    def _op():
        current = resolve_now(now)
        unit = get_unit(unit_id, lock=True)
        safe_months = coerce_months(months)
        if payment_status not in PAYMENT_STATUSES:
            raise BindingError("Invalid payment_status", details={"payment_status": payment_status})

        previous = unit.expiry_date
        new_expiry = extend_expiry(previous, safe_months, current)

        renewal = Renewal(
            unit=unit,
            months=safe_months,
            amount=max(0, int(amount or 0)),
            package_id=unit.package_id,
            previous_expiry_date=previous,
            new_expiry_date=new_expiry,
            payment_status=payment_status,
            note=note,
            created_by=created_by or "system",
            created_at=current,
        )
        db.session.add(renewal)

        unit.expiry_date = new_expiry
        recompute_unit_status(unit, current)

        db.session.flush()
        append_binding_event(
            event_type="inventory.renewed",
            event_category="renewal",
            inventory_id=unit.id,
            actor=created_by,
            occurred_at=current,
            payload={"renewal_id": renewal.id, "months": safe_months},
        )
        db.session.commit()
        return renewal

    return run_with_retry(_op)


def set_renewal_payment_status(renewal_id: int, payment_status: str) -> Renewal:
    """Correct the payment status of one renewal. Nothing else on it changes."""
    def _op():
        if payment_status not in PAYMENT_STATUSES:
            raise BindingError("Invalid payment_status", details={"payment_status": payment_status})
        renewal = lock_for_update(db.session.query(Renewal).filter_by(id=renewal_id)).first()
        if not renewal:
            raise BindingError("Renewal not found", details={"renewal_id": renewal_id})
        renewal.payment_status = payment_status
        db.session.commit()
        return renewal

    return run_with_retry(_op)


def list_renewals(
    *,
    order_id: int | None = None,
    inventory_id: int | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> list[Renewal]:
    q = db.session.query(Renewal)
    if order_id is not None:
        q = q.filter(Renewal.order_id == order_id)
    if inventory_id is not None:
        q = q.filter(Renewal.inventory_id == inventory_id)
    if from_date:
        q = q.filter(Renewal.created_at >= from_date)
    if to_date:
        q = q.filter(Renewal.created_at <= to_date)
    return q.order_by(Renewal.created_at.asc(), Renewal.id.asc()).all()
