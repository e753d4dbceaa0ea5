"""
TraceWell
Story blueprint — CRUD, approvals and the story approval workflow.

Endpoints:
    GET    /api/v1/stories                        — list (program_id, status, priority, q)
    POST   /api/v1/stories                        — create (status Draft)
    GET    /api/v1/stories/<id>                   — detail + available transitions
    PUT    /api/v1/stories/<id>                   — edit descriptive fields
    DELETE /api/v1/stories/<id>                   — delete (Admin, unprotected only)
    POST   /api/v1/stories/<id>/transition        — {to, notes?, expected_version?}
    GET    /api/v1/stories/<id>/approvals         — approval history
    POST   /api/v1/stories/<id>/approvals         — {approval_kind, decision?, notes?}
    GET    /api/v1/stories/<id>/versions          — version history
    GET    /api/v1/stories/workflow               — transition table, for diagrams
"""

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query, require_fields
from app.core.story_workflow import STORY_TRANSITIONS
from app.middleware.identity import current_actor
from app.services import story_service
from app.utils.helpers import db_commit_or_error

story_bp = Blueprint("stories", __name__, url_prefix="/api/v1")


def _story_detail(story, actor):
    data = story.to_dict()
    data["available_transitions"] = [
        t.to_dict() for t in story_service.get_available_story_actions(story, actor)
    ]
    return data


# ── Stories ──────────────────────────────────────────────────────────────────

@story_bp.route("/stories", methods=["GET"])
def list_stories():
    q = story_service.list_stories(
        program_id=request.args.get("program_id", type=int),
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        search=request.args.get("q"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [s.to_dict() for s in items], "total": total})


@story_bp.route("/stories", methods=["POST"])
def create_story():
    data = request.get_json(silent=True) or {}
    err = require_fields(data, "program_id", "title")
    if err:
        return err

    story = story_service.create_story(data["program_id"], data, current_actor())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(_story_detail(story, current_actor())), 201


@story_bp.route("/stories/workflow", methods=["GET"])
def story_workflow():
    return jsonify(STORY_TRANSITIONS.to_dict())


@story_bp.route("/stories/<int:story_id>", methods=["GET"])
def get_story(story_id):
    story = story_service.get_story(story_id)
    return jsonify(_story_detail(story, current_actor()))


@story_bp.route("/stories/<int:story_id>", methods=["PUT"])
def update_story(story_id):
    data = request.get_json(silent=True) or {}
    story = story_service.update_story(
        story_id, data, current_actor(), expected_version=data.get("expected_version"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(_story_detail(story, current_actor()))


@story_bp.route("/stories/<int:story_id>", methods=["DELETE"])
def delete_story(story_id):
    story_service.delete_story(story_id, current_actor())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Story deleted"}), 200


# ── Workflow ─────────────────────────────────────────────────────────────────

@story_bp.route("/stories/<int:story_id>/transition", methods=["POST"])
def transition_story(story_id):
    data = request.get_json(silent=True) or {}
    err = require_fields(data, "to")
    if err:
        return err

    story = story_service.transition_story_status(
        story_id, data["to"], current_actor(),
        notes=data.get("notes"),
        expected_version=data.get("expected_version"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(_story_detail(story, current_actor()))


# ── Approvals & versions ─────────────────────────────────────────────────────

@story_bp.route("/stories/<int:story_id>/approvals", methods=["GET"])
def list_approvals(story_id):
    approvals = story_service.list_story_approvals(story_id)
    return jsonify({"items": [a.to_dict() for a in approvals], "total": len(approvals)})


@story_bp.route("/stories/<int:story_id>/approvals", methods=["POST"])
def record_approval(story_id):
    data = request.get_json(silent=True) or {}
    err = require_fields(data, "approval_kind")
    if err:
        return err

    approval = story_service.record_story_approval(
        story_id, data["approval_kind"], current_actor(),
        decision=data.get("decision") or "approved",
        notes=data.get("notes"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(approval.to_dict()), 201


@story_bp.route("/stories/<int:story_id>/versions", methods=["GET"])
def list_versions(story_id):
    versions = story_service.list_story_versions(story_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})
