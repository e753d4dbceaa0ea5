"""
TraceWell
Audit trail blueprint (read-only).

Endpoints:
    GET  /api/v1/audit                              — filtered, paginated trail
    GET  /api/v1/audit/<int:log_id>                 — single entry
    GET  /api/v1/audit/<entity_type>/<entity_id>    — full history of one item
"""

from flask import Blueprint, jsonify, request

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import AUDIT_ENTITY_TYPES, AuditLog

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")

MAX_PER_PAGE = 200


def _check_entity_type(entity_type):
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValidationError(
            f"Unknown entity_type '{entity_type}'",
            details={"entity_type": sorted(AUDIT_ENTITY_TYPES)},
        )


def _oldest_first(q):
    return q.order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Query params:
        entity_type, entity_id   — one item or one kind of item
        action                   — prefix match ("story." → all story events)
        actor_id                 — acting user
        to_status                — events that entered a status
        page, per_page           — default 1 / 50, per_page capped at 200
    """
    q = AuditLog.query

    entity_type = request.args.get("entity_type")
    if entity_type:
        _check_entity_type(entity_type)
        q = q.filter(AuditLog.entity_type == entity_type)
    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))
    actor_id = request.args.get("actor_id", type=int)
    if actor_id is not None:
        q = q.filter(AuditLog.actor_user_id == actor_id)
    to_status = request.args.get("to_status")
    if to_status:
        q = q.filter(AuditLog.to_status == to_status)

    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(MAX_PER_PAGE, max(1, request.args.get("per_page", 50, type=int)))
    paginated = _oldest_first(q).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if log is None:
        raise NotFoundError("Audit log", log_id)
    return jsonify(log.to_dict())


@audit_bp.route("/audit/<entity_type>/<entity_id>", methods=["GET"])
def entity_history(entity_type, entity_id):
    """Every recorded event for one story / test case / execution / defect."""
    _check_entity_type(entity_type)
    logs = _oldest_first(AuditLog.query.filter_by(entity_type=entity_type,
                                                  entity_id=str(entity_id))).all()
    return jsonify({"entity_type": entity_type, "entity_id": entity_id,
                    "audit_logs": [log.to_dict() for log in logs], "total": len(logs)})
