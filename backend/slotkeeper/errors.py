# Overview: Typed errors raised by the allocation, expiry, renewal and order services.

"""
Binding error hierarchy.

    BindingError (base)
    |
    +-- UnitNotFound
    |   +-- SlotNotFound
    +-- OrderNotFound
    +-- SlotAlreadyAssigned
    +-- SlotNeedsUpdate
    +-- UnitExpired
    +-- NoSlotSelected
    +-- InvalidRenewalMonths
    +-- InconsistentBinding
    +-- OrderLocked
    +-- LedgerImmutable
    +-- CatalogError

Allocation errors are recoverable by the caller (the operator re-selects).
InconsistentBinding is surfaced for manual reconciliation and never resolved
by the engine.
"""

from __future__ import annotations


class BindingError(Exception):
    """Base class for engine errors. Carries a machine-readable code and details."""

    code = "BINDING_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class UnitNotFound(BindingError):
    code = "UNIT_NOT_FOUND"
    http_status = 404


class SlotNotFound(UnitNotFound):
    code = "SLOT_NOT_FOUND"


class OrderNotFound(BindingError):
    code = "ORDER_NOT_FOUND"
    http_status = 404


class SlotAlreadyAssigned(BindingError):
    """The unit or slot is bound to a different order."""
    code = "SLOT_ALREADY_ASSIGNED"
    http_status = 409


class SlotNeedsUpdate(BindingError):
    """The slot was freed by a warranty swap and must be cleared by an operator first."""
    code = "SLOT_NEEDS_UPDATE"
    http_status = 409


class UnitExpired(BindingError):
    code = "UNIT_EXPIRED"
    http_status = 409


class NoSlotSelected(BindingError):
    code = "NO_SLOT_SELECTED"


class InvalidRenewalMonths(BindingError):
    code = "INVALID_RENEWAL_MONTHS"


class InconsistentBinding(BindingError):
    """An order and a unit/slot disagree about who owns what."""
    code = "INCONSISTENT_BINDING"
    http_status = 409


class OrderLocked(BindingError):
    """The order is in a terminal state that forbids the requested change."""
    code = "ORDER_LOCKED"
    http_status = 409


class CatalogError(BindingError):
    code = "CATALOG_ERROR"


class LedgerImmutable(BindingError):
    """A renewal record was modified beyond its payment status."""
    code = "LEDGER_IMMUTABLE"
    http_status = 409
