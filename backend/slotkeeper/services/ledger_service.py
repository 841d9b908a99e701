# Overview: Append-only binding event log written inside the caller's transaction.

from __future__ import annotations

import json
from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import BindingEvent

"""
Binding ledger invariants

- Append-only audit log for binding changes.
- No domain/business logic in the ledger itself.
- Events are written inside the same DB transaction as the change they record.
- occurred_at is business time (the injected clock); created_at is system time (DB default).
"""


def append_binding_event(
    *,
    event_type: str,
    event_category: str,
    order_id: int | None = None,
    inventory_id: int | None = None,
    slot_keys: list[str] | None = None,
    actor: str | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: dict | str | None = None,
) -> BindingEvent:
    """
    Append-only binding event.

    - No domain logic here.
    - No deletes/updates of existing events.
    """
    if isinstance(payload, dict):
        payload = json.dumps(payload, sort_keys=True, default=str)

    ev = BindingEvent(
        event_type=event_type,
        event_category=event_category,
        order_id=order_id,
        inventory_id=inventory_id,
        slot_keys=list(slot_keys) if slot_keys else None,
        actor=actor,
        occurred_at=occurred_at,  # if None, db default applies
        note=note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_binding_events(
    *,
    order_id: int | None = None,
    inventory_id: int | None = None,
    event_category: str | None = None,
    as_of: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[BindingEvent], int]:
    """Read events newest first. as_of is inclusive on occurred_at."""
    q = db.session.query(BindingEvent)
    if order_id is not None:
        q = q.filter(BindingEvent.order_id == order_id)
    if inventory_id is not None:
        q = q.filter(BindingEvent.inventory_id == inventory_id)
    if event_category:
        q = q.filter(BindingEvent.event_category == event_category)
    if as_of is not None:
        q = q.filter(BindingEvent.occurred_at <= as_of)

    total = q.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    rows = q.order_by(BindingEvent.occurred_at.desc(), BindingEvent.id.desc()).offset(offset).limit(limit).all()
    return rows, total
