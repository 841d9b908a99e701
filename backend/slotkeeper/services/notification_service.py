# Overview: Store change signals and availability watchers that re-resolve candidates after a commit.

"""
Change notifications

The store side: session events note which watched tables a flush touched
and publish them once the transaction commits (rolled back work is never
published). No SQL runs inside the commit hook.

The engine side: an AvailabilityWatcher holds the candidate units for one
order form and re-runs resolve_candidates on its next read after a signal.
Transport to operators (websocket, polling) is not part of this module.
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import event
from sqlalchemy.orm import Session

from .allocation_service import resolve_candidates


WATCHED_TABLES = frozenset({"inventory", "inventory_slots", "orders"})

_PENDING_KEY = "slotkeeper.changed_tables"


class ChangeBus:
    """In-process fan-out of committed table changes."""

    def __init__(self):
        self._subscribers: list[Callable[[frozenset], None]] = []

    def subscribe(self, callback: Callable[[frozenset], None]) -> Callable[[frozenset], None]:
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[frozenset], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, tables: frozenset) -> None:
        for callback in list(self._subscribers):
            try:
                callback(tables)
            except Exception:
                current_app.logger.exception("Change subscriber failed for tables %s", sorted(tables))


change_bus = ChangeBus()


@event.listens_for(Session, "after_flush")
def _record_changed_tables(session, flush_context):
    changed = session.info.setdefault(_PENDING_KEY, set())
    for obj in itertools.chain(session.new, session.dirty, session.deleted):
        name = getattr(obj, "__tablename__", None)
        if name in WATCHED_TABLES:
            changed.add(name)


@event.listens_for(Session, "after_commit")
def _publish_changed_tables(session):
    changed = session.info.pop(_PENDING_KEY, None)
    if changed:
        change_bus.publish(frozenset(changed))


@event.listens_for(Session, "after_rollback")
def _discard_changed_tables(session):
    session.info.pop(_PENDING_KEY, None)


class AvailabilityWatcher:
    """
    Candidate units for one order being created or edited.

    Marked stale by any committed change to inventory, slots or orders;
    the next read of `candidates` resolves again.
    """

    def __init__(
        self,
        package_id: int,
        editing_order_id: int | None = None,
        *,
        bus: ChangeBus = change_bus,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.package_id = package_id
        self.editing_order_id = editing_order_id
        self.signals = 0
        self.refreshes = 0
        self._bus = bus
        self._clock = clock
        self._stale = True
        self._candidates = []
        bus.subscribe(self._on_change)

    def _on_change(self, tables: frozenset) -> None:
        if tables & WATCHED_TABLES:
            self.signals += 1
            self._stale = True

    @property
    def stale(self) -> bool:
        return self._stale

    @property
    def candidates(self) -> list:
        if self._stale:
            now = self._clock() if self._clock else None
            self._candidates = resolve_candidates(self.package_id, self.editing_order_id, now=now)
            self._stale = False
            self.refreshes += 1
        return list(self._candidates)

    def candidate_ids(self) -> list[int]:
        return [u.id for u in self.candidates]

    def close(self) -> None:
        self._bus.unsubscribe(self._on_change)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
