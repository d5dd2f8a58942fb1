# backend/storeledger/routes/system.py
"""
System health endpoint.

Reports database connectivity and whether a default store can be resolved,
which every ledger call without an explicit store_id depends on.
"""

import time
from flask import Blueprint, current_app, jsonify

from ..extensions import db
from ..errors import StoreNotConfiguredError
from ..models import Store
from ..services.store_service import get_default_store_id
from storeledger.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Check database connectivity with a trivial query."""
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"stores": store_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_default_store() -> dict:
    try:
        return {"status": "healthy", "default_store_id": get_default_store_id()}
    except StoreNotConfiguredError as e:
        return {"status": "degraded", "warning": str(e)}


@system_bp.get("/api/health")
def health():
    database = check_database_health()
    store = check_default_store() if database["status"] == "healthy" else {"status": "unknown"}

    statuses = {database["status"], store["status"]}
    if "unhealthy" in statuses:
        overall, code = "unhealthy", 503
    elif statuses == {"healthy"}:
        overall, code = "healthy", 200
    else:
        overall, code = "degraded", 200

    return jsonify({
        "status": overall,
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database, "default_store": store},
    }), code
