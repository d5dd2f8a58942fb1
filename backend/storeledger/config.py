# backend/storeledger/config.py
from __future__ import annotations
import os


def _int_or_none(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storeledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Store used when a ledger call omits store_id. None means "lowest store id".
    DEFAULT_STORE_ID = _int_or_none(os.environ.get("DEFAULT_STORE_ID"))

    # "store": a purchase only serves backorders placed at the receiving store.
    # "any": a purchase serves backorders from every store.
    BACKORDER_ALLOCATION_SCOPE = os.environ.get("BACKORDER_ALLOCATION_SCOPE", "store")

    # Optimistic locking retry policy
    VERSION_RETRY_ATTEMPTS = int(os.environ.get("VERSION_RETRY_ATTEMPTS", "3"))
    VERSION_RETRY_BACKOFF = float(os.environ.get("VERSION_RETRY_BACKOFF", "0.05"))

    # Purchase status transition table override; None uses purchase_service.PURCHASE_TRANSITIONS
    PURCHASE_TRANSITIONS = None


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    DEFAULT_STORE_ID = None
    BACKORDER_ALLOCATION_SCOPE = "store"
    VERSION_RETRY_BACKOFF = 0.0
