# Overview: Request decorators for API routes; store context and domain error mapping.

from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .models import Store
from .validation import (
    ConflictError,
    DepositError,
    InsufficientQuantityError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


STORE_HEADER = "X-Store-Id"
ACTOR_HEADER = "X-Actor"

# Most specific first
ERROR_STATUS = (
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (InsufficientQuantityError, 400),
    (ValidationError, 400),
    (DepositError, 400),
)


def status_for(exc: DepositError) -> int:
    for kind, status in ERROR_STATUS:
        if isinstance(exc, kind):
            return status
    return 400


def error_response(exc: DepositError):
    return jsonify(exc.to_dict()), status_for(exc)


def require_store_context(f):
    """
    Require an explicit store context on the request.

    Sets the following Flask g attributes:
    - g.store_id: from the X-Store-Id header (must name an existing store)
    - g.actor: staff identifier from X-Actor, or None

    Returns 400 if the header is missing or not an integer, 404 if the store
    does not exist.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(STORE_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": f"{STORE_HEADER} header is required", "code": "validation_error"}), 400
        if not raw.isdigit():
            return jsonify({"error": f"{STORE_HEADER} must be an integer", "code": "validation_error"}), 400

        store_id = int(raw)
        if not db.session.query(Store.id).filter_by(id=store_id).first():
            return jsonify({"error": f"Store {store_id} not found", "code": "not_found"}), 404

        g.store_id = store_id
        g.actor = (request.headers.get(ACTOR_HEADER) or "").strip() or None
        return f(*args, **kwargs)

    return decorated_function


def json_api(f):
    """
    Run a route body and turn its outcome into a JSON response.

    - The route returns a payload (dict or list) or (payload, status).
    - DepositError subclasses roll back the session and map to 400/404/409.
    - KeyError from a missing body field maps to 400.
    - Audit write failures queued on g.audit_warnings during the call are
      reported under "warnings"; the business change has already committed.
    - Anything else is logged and returned as 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.audit_warnings = []
        try:
            result = f(*args, **kwargs)
        except DepositError as e:
            db.session.rollback()
            return error_response(e)
        except KeyError as e:
            db.session.rollback()
            return jsonify({"error": f"Missing required field: {e}", "code": "validation_error"}), 400
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Unhandled error in %s %s", request.method, request.path)
            return jsonify({"error": "Internal server error"}), 500
        finally:
            audit_warnings = g.pop("audit_warnings", [])

        body, status = result if isinstance(result, tuple) else (result, 200)
        if audit_warnings and isinstance(body, dict):
            body = {**body, "warnings": audit_warnings}
        return jsonify(body), status

    return decorated_function


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data
