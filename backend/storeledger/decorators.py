# Overview: Request decorators for API routes: actor identity and service error mapping.

from functools import wraps
from flask import request, jsonify, g, current_app

from .errors import (
    ActorRequiredError,
    BusinessRuleError,
    NotFoundError,
    StoreNotConfiguredError,
    VersionConflictError,
)
from .validation import ValidationError


ACTOR_HEADER = "X-Actor-Id"


def require_actor(f):
    """
    Require an actor identity forwarded by the upstream auth layer.

    Sets g.actor_id (int). Returns 401 when the header is missing and 400
    when it is not an integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER)
        if raw is None or not raw.strip():
            return jsonify({"error": "Authentication required"}), 401
        try:
            g.actor_id = int(raw.strip())
        except ValueError:
            return jsonify({"error": f"{ACTOR_HEADER} must be an integer"}), 400
        return f(*args, **kwargs)

    return decorated_function


def handle_service_errors(f):
    """
    Map service exceptions to JSON error responses.

    401 missing actor, 400 validation, 404 not found, 422 business rule,
    409 conflict, 503 store not configured, 500 anything else (logged).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ActorRequiredError as e:
            return jsonify({"error": str(e)}), 401
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400
        except NotFoundError as e:
            return jsonify({"error": str(e), "details": e.details}), 404
        except BusinessRuleError as e:
            return jsonify({"error": str(e), "details": e.details}), 422
        except VersionConflictError as e:
            return jsonify({"error": str(e), "details": e.details}), 409
        except StoreNotConfiguredError as e:
            current_app.logger.error("Store not configured: %s", e)
            return jsonify({"error": str(e), "details": e.details}), 503
        except Exception:
            current_app.logger.exception("Unhandled error in %s", request.path)
            return jsonify({"error": "Internal server error"}), 500

    return decorated_function
