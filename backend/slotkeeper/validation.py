# Overview: Payload validation for API writes: column-driven coercion plus per-entity business rules.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from slotkeeper.time_utils import parse_iso_datetime


# Prices are whole currency units (VND); anything above this is a typo
MAX_PRICE = 999_999_999_999

MAX_SLOTS = 100


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate code)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    What an endpoint accepts for one model.

    - writable_fields: columns clients may set
    - required_on_create: keys that must be present on POST
    - extra_fields: accepted keys that are not columns (e.g. slot_ids), passed through as-is
    """
    writable_fields: set[str]
    required_on_create: set[str] | None = None
    extra_fields: set[str] | None = None


# =============================================================================
# Column coercion
# =============================================================================

def _to_int(key: str, value: Any) -> int:
    # bool is an int subclass; JSON true must not become 1
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{key} must be a whole number")


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ValidationError(f"{key} must be true or false")


def _to_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            parsed = parse_iso_datetime(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError(f"{key} must be an ISO-8601 datetime")


def _to_json(key: str, value: Any):
    if isinstance(value, (dict, list)):
        return value
    raise ValidationError(f"{key} must be an object or a list")


def _to_text(key: str, value: Any) -> str:
    return str(value).strip()


# First match wins
_COERCERS: list[tuple[type, Callable[[str, Any], Any]]] = [
    (Boolean, _to_bool),
    (Integer, _to_int),
    (DateTime, _to_datetime),
    (JSON, _to_json),
    (String, _to_text),
    (Text, _to_text),
]


def _coerce(col, value: Any):
    for coltype, coerce in _COERCERS:
        if isinstance(col.type, coltype):
            return coerce(col.key, value)
    return value


def validate_payload(
    *,
    model,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Clean an incoming JSON body into a patch dict.

    Unknown or non-writable keys are rejected, values are coerced by the
    column type, NOT NULL and String(n) limits are enforced. partial=False
    additionally requires policy.required_on_create.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(set(policy.required_on_create or ()) - set(payload))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {c.key: c for c in model.__mapper__.columns}
    extras = policy.extra_fields or set()

    patch: dict = {}
    for key, raw in payload.items():
        if key in extras:
            patch[key] = raw
            continue
        if key not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {key}")
        col = columns.get(key)
        if col is None:
            raise ValidationError(f"Unknown field: {key}")

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
            continue

        value = _coerce(col, raw)
        if isinstance(value, str):
            if value == "" and not col.nullable:
                raise ValidationError(f"{key} cannot be blank")
            length = getattr(col.type, "length", None)
            if length and len(value) > length:
                raise ValidationError(f"{key} exceeds max length {length}")
        patch[key] = value

    return patch


# =============================================================================
# Business rules
# =============================================================================

def _check_price(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        price = patch[key]
        if not isinstance(price, int):
            raise ValidationError(f"{key} must be an integer")
        if price < 0:
            raise ValidationError(f"{key} must be >= 0")
        if price > MAX_PRICE:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE}")


def enforce_rules_package(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    for key in ("cost_price", "ctv_price", "retail_price"):
        _check_price(patch, key)

    if "warranty_months" in patch and patch["warranty_months"] is not None:
        if patch["warranty_months"] < 0:
            raise ValidationError("warranty_months must be >= 0")

    if patch.get("default_slots") is not None:
        if not 1 <= patch["default_slots"] <= MAX_SLOTS:
            raise ValidationError(f"default_slots must be between 1 and {MAX_SLOTS}")

    columns = patch.get("account_columns")
    if columns is not None:
        if not isinstance(columns, list):
            raise ValidationError("account_columns must be a list")
        for col in columns:
            if not isinstance(col, dict) or not str(col.get("id") or "").strip():
                raise ValidationError("each account column needs an id")


def enforce_rules_customer(patch: dict) -> None:
    from .models.catalog import CUSTOMER_TYPES

    if "customer_type" in patch and patch["customer_type"] not in CUSTOMER_TYPES:
        raise ValidationError(f"customer_type must be one of {', '.join(CUSTOMER_TYPES)}")


def enforce_rules_inventory_unit(patch: dict) -> None:
    _check_price(patch, "purchase_price")

    if patch.get("total_slots") is not None:
        if not 1 <= patch["total_slots"] <= MAX_SLOTS:
            raise ValidationError(f"total_slots must be between 1 and {MAX_SLOTS}")

    if patch.get("pool_warranty_months") is not None and patch["pool_warranty_months"] < 1:
        raise ValidationError("pool_warranty_months must be >= 1")

    if patch.get("account_data") is not None and not isinstance(patch["account_data"], dict):
        raise ValidationError("account_data must be an object")


def enforce_rules_order(patch: dict) -> None:
    from .models.orders import ORDER_STATUSES, PAYMENT_STATUSES

    _check_price(patch, "custom_price")

    if "status" in patch and patch["status"] not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")
    if "payment_status" in patch and patch["payment_status"] not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")

    if "slot_ids" in patch and patch["slot_ids"] is not None:
        slot_ids = patch["slot_ids"]
        if not isinstance(slot_ids, list) or not all(isinstance(s, str) and s.strip() for s in slot_ids):
            raise ValidationError("slot_ids must be a list of slot ids")
        patch["slot_ids"] = [s.strip() for s in slot_ids]

    if "inventory_item_id" in patch and patch["inventory_item_id"] is not None:
        if patch["inventory_item_id"] < 1:
            raise ValidationError("inventory_item_id must be a positive id")
