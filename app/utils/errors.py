"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Story not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return api_error(E.NOTES_REQUIRED, "Notes are required", details={"to": "Out of Scope"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: every code carries the ERR_ prefix.
    """

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Workflow – HTTP 422
    ILLEGAL_TRANSITION = "ERR_ILLEGAL_TRANSITION"
    NOTES_REQUIRED = "ERR_NOTES_REQUIRED"
    APPROVAL_REQUIRED = "ERR_APPROVAL_REQUIRED"
    REVIEW_REQUIRED = "ERR_REVIEW_REQUIRED"
    STEPS_INCOMPLETE = "ERR_STEPS_INCOMPLETE"
    CYCLE_LOCKED = "ERR_CYCLE_LOCKED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Identity – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    UNKNOWN_ROLE = "ERR_UNKNOWN_ROLE"
    SEGREGATION_OF_DUTIES = "ERR_SEGREGATION_OF_DUTIES"
    ACKNOWLEDGMENT_REQUIRED = "ERR_ACKNOWLEDGMENT_REQUIRED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.ILLEGAL_TRANSITION: 422,
    E.NOTES_REQUIRED: 422,
    E.APPROVAL_REQUIRED: 422,
    E.REVIEW_REQUIRED: 422,
    E.STEPS_INCOMPLETE: 422,
    E.CYCLE_LOCKED: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.UNKNOWN_ROLE: 403,
    E.SEGREGATION_OF_DUTIES: 403,
    E.ACKNOWLEDGMENT_REQUIRED: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (transition, approval kind, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
