# Overview: Store lookup and the default-store policy used by ledger calls that omit store_id.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Store
from ..errors import NotFoundError, StoreNotConfiguredError


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if store is None:
        raise NotFoundError(f"Store {store_id} not found", details={"store_id": store_id})
    return store


def get_default_store_id() -> int:
    """
    Resolve the store used when a call does not name one.

    DEFAULT_STORE_ID from config wins when set; otherwise the lowest store id.
    Raises StoreNotConfiguredError when no store exists at all.
    """
    configured = current_app.config.get("DEFAULT_STORE_ID")
    if configured is not None:
        if db.session.get(Store, configured) is None:
            raise StoreNotConfiguredError(
                f"Configured DEFAULT_STORE_ID {configured} does not exist",
                details={"default_store_id": configured},
            )
        return configured

    store_id = db.session.query(db.func.min(Store.id)).scalar()
    if store_id is None:
        raise StoreNotConfiguredError("No store configured")
    return int(store_id)


def resolve_store_id(store_id: int | None) -> int:
    """Validate an explicit store_id or fall back to the default store."""
    if store_id is None:
        return get_default_store_id()
    return get_store(store_id).id


def create_store(name: str, code: str | None = None) -> Store:
    store = Store(name=name.strip(), code=code)
    db.session.add(store)
    db.session.commit()
    return store
