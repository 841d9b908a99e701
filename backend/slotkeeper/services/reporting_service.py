# Overview: Import, renewal and sales figures over a date range, read from units, orders and the renewal ledger.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from slotkeeper.extensions import db
from slotkeeper.models import InventoryUnit, Order, Renewal
from slotkeeper.time_utils import parse_iso_datetime, to_utc_z


class ReportError(Exception):
    """Raised when report generation fails."""
    pass


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError:
        raise ReportError("start and end must be ISO-8601 datetimes")
    if start_dt and end_dt and start_dt > end_dt:
        raise ReportError("start must be before end")
    return start_dt, end_dt


def _in_range(query, column, start_dt, end_dt):
    if start_dt:
        query = query.filter(column >= start_dt)
    if end_dt:
        query = query.filter(column <= end_dt)
    return query


def _sum(query) -> int:
    return int(query.scalar() or 0)


def cost_report(*, start: str | None = None, end: str | None = None) -> dict:
    """
    Money in and out over [start, end] (inclusive).

    - import_cost: purchase price of units bought in range
    - inventory_renewal_cost: renewals paid to suppliers for units
    - sales_revenue / cogs: orders purchased in range, cancelled ones excluded
    - order_renewal_revenue: renewals sold on orders
    """
    start_dt, end_dt = _parse_range(start, end)

    import_q = _in_range(
        db.session.query(func.coalesce(func.sum(InventoryUnit.purchase_price), 0)),
        InventoryUnit.purchase_date,
        start_dt,
        end_dt,
    )
    unit_count_q = _in_range(
        db.session.query(func.count(InventoryUnit.id)),
        InventoryUnit.purchase_date,
        start_dt,
        end_dt,
    )

    inv_renewal_q = _in_range(
        db.session.query(func.coalesce(func.sum(Renewal.amount), 0)).filter(Renewal.inventory_id.isnot(None)),
        Renewal.created_at,
        start_dt,
        end_dt,
    )
    order_renewal_q = _in_range(
        db.session.query(func.coalesce(func.sum(Renewal.amount), 0)).filter(Renewal.order_id.isnot(None)),
        Renewal.created_at,
        start_dt,
        end_dt,
    )

    sales_base = _in_range(
        db.session.query(
            func.count(Order.id).label("orders"),
            func.coalesce(func.sum(Order.sale_price), 0).label("revenue"),
            func.coalesce(func.sum(Order.cogs), 0).label("cogs"),
        ).filter(Order.status != "CANCELLED"),
        Order.purchase_date,
        start_dt,
        end_dt,
    )
    sales = sales_base.one()

    import_cost = _sum(import_q)
    inventory_renewal_cost = _sum(inv_renewal_q)
    sales_revenue = int(sales.revenue or 0)
    order_renewal_revenue = _sum(order_renewal_q)
    cogs = int(sales.cogs or 0)

    return {
        "start": to_utc_z(start_dt) if start_dt else None,
        "end": to_utc_z(end_dt) if end_dt else None,
        "units_imported": _sum(unit_count_q),
        "import_cost": import_cost,
        "inventory_renewal_cost": inventory_renewal_cost,
        "total_cost": import_cost + inventory_renewal_cost,
        "orders": int(sales.orders or 0),
        "sales_revenue": sales_revenue,
        "order_renewal_revenue": order_renewal_revenue,
        "cogs": cogs,
        "gross_profit": sales_revenue + order_renewal_revenue - cogs,
    }
