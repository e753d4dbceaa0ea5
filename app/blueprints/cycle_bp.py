"""
TraceWell
Cycle blueprint — UAT cycles, tester pools and tester acknowledgments.

Endpoints:
    GET    /api/v1/uat/cycles                              — list (program_id, status)
    POST   /api/v1/uat/cycles                              — create (draft)
    GET    /api/v1/uat/cycles/mine                         — active / completed cycles the caller tests in
    GET    /api/v1/uat/cycles/<id>                         — detail + available transitions
    PUT    /api/v1/uat/cycles/<id>                         — edit settings (unlocked only)
    DELETE /api/v1/uat/cycles/<id>                         — admin, unlocked, no executions
    POST   /api/v1/uat/cycles/<id>/transition              — {to, notes?, expected_version?}
    POST   /api/v1/uat/cycles/<id>/lock                    — {notes?, expected_version?}

    GET    /api/v1/uat/cycles/<id>/testers                 — tester pool
    POST   /api/v1/uat/cycles/<id>/testers                 — {user_ids: [...], capacity_weight?}
    PUT    /api/v1/uat/cycles/<id>/testers/<user_id>       — {capacity_weight}
    DELETE /api/v1/uat/cycles/<id>/testers/<user_id>       — remove (deactivate if they have work)

    GET    /api/v1/uat/cycles/<id>/acknowledgment          — caller's access / acknowledgment state
    POST   /api/v1/uat/cycles/<id>/acknowledgment          — record the caller's acknowledgment
"""

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query, require_fields
from app.middleware.identity import current_actor
from app.services import cycle_service
from app.utils.helpers import db_commit_or_error

cycle_bp = Blueprint("cycles", __name__, url_prefix="/api/v1/uat/cycles")


def _body():
    return request.get_json(silent=True) or {}


def _cycle_detail(cycle):
    data = cycle.to_dict()
    data["available_transitions"] = [
        t.to_dict() for t in cycle_service.get_available_cycle_actions(cycle, current_actor())
    ]
    return data


def _committed(payload, status=200):
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(payload), status


# ═════════════════════════════════════════════════════════════════════════════
# CYCLES
# ═════════════════════════════════════════════════════════════════════════════

@cycle_bp.route("", methods=["GET"])
def list_cycles():
    q = cycle_service.list_cycles(
        program_id=request.args.get("program_id", type=int),
        status=request.args.get("status"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@cycle_bp.route("", methods=["POST"])
def create_cycle():
    data = _body()
    err = require_fields(data, "program_id", "name")
    if err:
        return err
    cycle = cycle_service.create_cycle(data, current_actor())
    return _committed(_cycle_detail(cycle), 201)


@cycle_bp.route("/mine", methods=["GET"])
def my_cycles():
    items, total = paginate_query(cycle_service.get_my_cycles(current_actor()))
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@cycle_bp.route("/<int:cycle_id>", methods=["GET"])
def get_cycle(cycle_id):
    return jsonify(_cycle_detail(cycle_service.get_cycle(cycle_id)))


@cycle_bp.route("/<int:cycle_id>", methods=["PUT"])
def update_cycle(cycle_id):
    data = _body()
    cycle = cycle_service.update_cycle(
        cycle_id, data, current_actor(), expected_version=data.get("expected_version"),
    )
    return _committed(_cycle_detail(cycle))


@cycle_bp.route("/<int:cycle_id>", methods=["DELETE"])
def delete_cycle(cycle_id):
    cycle_service.delete_cycle(cycle_id, current_actor())
    return _committed({"deleted": True, "id": cycle_id})


@cycle_bp.route("/<int:cycle_id>/transition", methods=["POST"])
def transition_cycle(cycle_id):
    data = _body()
    err = require_fields(data, "to")
    if err:
        return err
    cycle = cycle_service.transition_cycle(
        cycle_id, data["to"], current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_cycle_detail(cycle))


@cycle_bp.route("/<int:cycle_id>/lock", methods=["POST"])
def lock_cycle(cycle_id):
    data = _body()
    cycle = cycle_service.lock_cycle(
        cycle_id, current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_cycle_detail(cycle))


# ═════════════════════════════════════════════════════════════════════════════
# TESTER POOL
# ═════════════════════════════════════════════════════════════════════════════

@cycle_bp.route("/<int:cycle_id>/testers", methods=["GET"])
def list_testers(cycle_id):
    testers = cycle_service.list_cycle_testers(cycle_id)
    return jsonify({"items": [t.to_dict() for t in testers], "total": len(testers)})


@cycle_bp.route("/<int:cycle_id>/testers", methods=["POST"])
def add_testers(cycle_id):
    data = _body()
    err = require_fields(data, "user_ids")
    if err:
        return err
    user_ids = data["user_ids"]
    if not isinstance(user_ids, list):
        user_ids = [user_ids]
    members = cycle_service.add_testers(
        cycle_id, user_ids, current_actor(), capacity_weight=data.get("capacity_weight", 100),
    )
    return _committed({"items": [m.to_dict() for m in members], "total": len(members)}, 201)


@cycle_bp.route("/<int:cycle_id>/testers/<int:user_id>", methods=["PUT"])
def update_tester(cycle_id, user_id):
    data = _body()
    err = require_fields(data, "capacity_weight")
    if err:
        return err
    member = cycle_service.update_tester_capacity(
        cycle_id, user_id, data["capacity_weight"], current_actor(),
    )
    return _committed(member.to_dict())


@cycle_bp.route("/<int:cycle_id>/testers/<int:user_id>", methods=["DELETE"])
def remove_tester(cycle_id, user_id):
    deactivated = cycle_service.remove_tester(cycle_id, user_id, current_actor())
    return _committed({"removed": True, "deactivated": deactivated, "user_id": user_id})


# ═════════════════════════════════════════════════════════════════════════════
# ACKNOWLEDGMENT
# ═════════════════════════════════════════════════════════════════════════════

@cycle_bp.route("/<int:cycle_id>/acknowledgment", methods=["GET"])
def acknowledgment_status(cycle_id):
    return jsonify(cycle_service.acknowledgment_status(cycle_id, current_actor()))


@cycle_bp.route("/<int:cycle_id>/acknowledgment", methods=["POST"])
def record_acknowledgment(cycle_id):
    ack = cycle_service.record_acknowledgment(
        cycle_id, current_actor(), _body(),
        ip_address=request.headers.get("X-Forwarded-For", request.remote_addr),
        user_agent=request.headers.get("User-Agent"),
    )
    return _committed(ack.to_dict(), 201)
