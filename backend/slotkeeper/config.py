# backend/slotkeeper/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/slotkeeper.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///slotkeeper.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Slots created for an account unit when neither the intake nor the package says otherwise
    DEFAULT_ACCOUNT_SLOTS = int(os.environ.get("DEFAULT_ACCOUNT_SLOTS", "5"))

    # Human-readable code prefixes
    ORDER_CODE_PREFIX = os.environ.get("ORDER_CODE_PREFIX", "DH")
    INVENTORY_CODE_PREFIX = os.environ.get("INVENTORY_CODE_PREFIX", "KHO")

    # Run the expiry sweep inside create/update before a unit is bound
    SWEEP_BEFORE_ALLOCATE = _env_bool("SWEEP_BEFORE_ALLOCATE", True)
