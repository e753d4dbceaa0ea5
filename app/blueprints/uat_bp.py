"""
TraceWell
UAT blueprint — test cases, test executions and defects.

Endpoints:
    Test cases
        GET  /api/v1/uat/test-cases                    — list (story_id, program_id, status)
        POST /api/v1/uat/test-cases                    — create (draft)
        POST /api/v1/uat/test-cases/generated          — ingest generated cases (unreviewed drafts)
        GET  /api/v1/uat/test-cases/<id>               — detail + available transitions
        PUT  /api/v1/uat/test-cases/<id>               — edit (draft / ready only)
        POST /api/v1/uat/test-cases/<id>/review        — mark human-reviewed
        POST /api/v1/uat/test-cases/<id>/transition    — {to, notes?, expected_version?}

    Executions
        GET  /api/v1/uat/executions                    — list (assigned_to, status, story_id, cycle_id)
        POST /api/v1/uat/executions                    — bulk assign {test_case_id, assigned_to: [...], cycle_id?}
        GET  /api/v1/uat/executions/mine               — executions assigned to the caller
        GET  /api/v1/uat/executions/<id>               — detail + actionable transitions
        POST /api/v1/uat/executions/<id>/start
        PUT  /api/v1/uat/executions/<id>/steps/<n>     — {status, actual_result?, notes?}
        POST /api/v1/uat/executions/<id>/complete      — {status, notes?}
        POST /api/v1/uat/executions/<id>/retest
        POST /api/v1/uat/executions/<id>/verify

    Defects
        GET  /api/v1/uat/defects                       — list (program_id, story_id, severity, status, assigned_to, q)
        POST /api/v1/uat/defects                       — report
        GET  /api/v1/uat/defects/<id>                  — detail + available transitions
        PUT  /api/v1/uat/defects/<id>                  — edit descriptive fields
        POST /api/v1/uat/defects/<id>/transition       — {to, notes?, expected_version?}
        POST /api/v1/uat/defects/<id>/assign           — {assigned_to}
"""

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query, require_fields
from app.middleware.identity import current_actor
from app.services import defect_service, execution_service, test_case_service
from app.utils.helpers import db_commit_or_error

uat_bp = Blueprint("uat", __name__, url_prefix="/api/v1/uat")


def _body():
    return request.get_json(silent=True) or {}


def _with_actions(entity, actions):
    data = entity.to_dict()
    data["available_transitions"] = [t.to_dict() for t in actions]
    return data


def _test_case_detail(case):
    return _with_actions(case, test_case_service.get_available_test_case_actions(case, current_actor()))


def _execution_detail(execution):
    return _with_actions(
        execution, execution_service.get_available_execution_actions(execution, current_actor()),
    )


def _defect_detail(defect):
    return _with_actions(defect, defect_service.get_available_defect_actions(defect, current_actor()))


def _committed(payload, status=200):
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(payload), status


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/test-cases", methods=["GET"])
def list_test_cases():
    ai_flag = request.args.get("is_ai_generated")
    q = test_case_service.list_test_cases(
        story_id=request.args.get("story_id", type=int),
        program_id=request.args.get("program_id", type=int),
        status=request.args.get("status"),
        is_ai_generated=None if ai_flag is None else ai_flag.lower() == "true",
    )
    items, total = paginate_query(q)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@uat_bp.route("/test-cases", methods=["POST"])
def create_test_case():
    data = _body()
    err = require_fields(data, "story_id", "title")
    if err:
        return err
    case = test_case_service.create_test_case(data["story_id"], data, current_actor())
    return _committed(_test_case_detail(case), 201)


@uat_bp.route("/test-cases/generated", methods=["POST"])
def ingest_generated_test_cases():
    data = _body()
    err = require_fields(data, "story_id", "test_cases")
    if err:
        return err
    cases = test_case_service.ingest_generated_test_cases(
        data["story_id"], data["test_cases"], current_actor(),
    )
    return _committed({"items": [c.to_dict() for c in cases], "total": len(cases)}, 201)


@uat_bp.route("/test-cases/<int:test_case_id>", methods=["GET"])
def get_test_case(test_case_id):
    return jsonify(_test_case_detail(test_case_service.get_test_case(test_case_id)))


@uat_bp.route("/test-cases/<int:test_case_id>", methods=["PUT"])
def update_test_case(test_case_id):
    data = _body()
    case = test_case_service.update_test_case(
        test_case_id, data, current_actor(), expected_version=data.get("expected_version"),
    )
    return _committed(_test_case_detail(case))


@uat_bp.route("/test-cases/<int:test_case_id>/review", methods=["POST"])
def review_test_case(test_case_id):
    data = _body()
    case = test_case_service.review_test_case(
        test_case_id, current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_test_case_detail(case))


@uat_bp.route("/test-cases/<int:test_case_id>/transition", methods=["POST"])
def transition_test_case(test_case_id):
    data = _body()
    err = require_fields(data, "to")
    if err:
        return err
    case = test_case_service.transition_test_case(
        test_case_id, data["to"], current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_test_case_detail(case))


# ═════════════════════════════════════════════════════════════════════════════
# EXECUTIONS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/executions", methods=["GET"])
def list_executions():
    q = execution_service.list_executions(
        assigned_to=request.args.get("assigned_to", type=int),
        status=request.args.get("status"),
        story_id=request.args.get("story_id", type=int),
        test_case_id=request.args.get("test_case_id", type=int),
        cycle_id=request.args.get("cycle_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [e.to_dict() for e in items], "total": total})


@uat_bp.route("/executions", methods=["POST"])
def assign_executions():
    data = _body()
    err = require_fields(data, "test_case_id", "assigned_to")
    if err:
        return err
    assignees = data["assigned_to"]
    if not isinstance(assignees, list):
        assignees = [assignees]
    executions = execution_service.assign_executions(
        data["test_case_id"], assignees, current_actor(),
        environment=data.get("environment"),
        cycle_id=data.get("cycle_id"),
        notes=data.get("notes"),
    )
    return _committed({"items": [e.to_dict() for e in executions], "total": len(executions)}, 201)


@uat_bp.route("/executions/mine", methods=["GET"])
def my_executions():
    q = execution_service.get_my_executions(current_actor(), status=request.args.get("status"))
    items, total = paginate_query(q)
    return jsonify({"items": [_execution_detail(e) for e in items], "total": total})


@uat_bp.route("/executions/<int:execution_id>", methods=["GET"])
def get_execution(execution_id):
    return jsonify(_execution_detail(execution_service.get_execution(execution_id)))


@uat_bp.route("/executions/<int:execution_id>/start", methods=["POST"])
def start_execution(execution_id):
    data = _body()
    execution = execution_service.start_execution(
        execution_id, current_actor(), expected_version=data.get("expected_version"),
    )
    return _committed(_execution_detail(execution))


@uat_bp.route("/executions/<int:execution_id>/steps/<int:step_number>", methods=["PUT"])
def record_step(execution_id, step_number):
    data = _body()
    err = require_fields(data, "status")
    if err:
        return err
    execution = execution_service.record_step_result(
        execution_id, step_number, data, current_actor(),
        expected_version=data.get("expected_version"),
    )
    return _committed(_execution_detail(execution))


@uat_bp.route("/executions/<int:execution_id>/complete", methods=["POST"])
def complete_execution(execution_id):
    data = _body()
    err = require_fields(data, "status")
    if err:
        return err
    execution = execution_service.complete_execution(
        execution_id, data["status"], current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_execution_detail(execution))


@uat_bp.route("/executions/<int:execution_id>/retest", methods=["POST"])
def retest_execution(execution_id):
    data = _body()
    execution = execution_service.retest_execution(
        execution_id, current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_execution_detail(execution))


@uat_bp.route("/executions/<int:execution_id>/verify", methods=["POST"])
def verify_execution(execution_id):
    data = _body()
    execution = execution_service.verify_execution(
        execution_id, current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_execution_detail(execution))


# ═════════════════════════════════════════════════════════════════════════════
# DEFECTS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/defects", methods=["GET"])
def list_defects():
    q = defect_service.list_defects(
        program_id=request.args.get("program_id", type=int),
        story_id=request.args.get("story_id", type=int),
        severity=request.args.get("severity"),
        status=request.args.get("status"),
        assigned_to=request.args.get("assigned_to", type=int),
        search=request.args.get("q"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [d.to_dict() for d in items], "total": total})


@uat_bp.route("/defects", methods=["POST"])
def create_defect():
    data = _body()
    err = require_fields(data, "title")
    if err:
        return err
    defect = defect_service.create_defect(data, current_actor())
    return _committed(_defect_detail(defect), 201)


@uat_bp.route("/defects/<int:defect_id>", methods=["GET"])
def get_defect(defect_id):
    return jsonify(_defect_detail(defect_service.get_defect(defect_id)))


@uat_bp.route("/defects/<int:defect_id>", methods=["PUT"])
def update_defect(defect_id):
    data = _body()
    defect = defect_service.update_defect(
        defect_id, data, current_actor(), expected_version=data.get("expected_version"),
    )
    return _committed(_defect_detail(defect))


@uat_bp.route("/defects/<int:defect_id>/transition", methods=["POST"])
def transition_defect(defect_id):
    data = _body()
    err = require_fields(data, "to")
    if err:
        return err
    defect = defect_service.transition_defect(
        defect_id, data["to"], current_actor(),
        notes=data.get("notes"), expected_version=data.get("expected_version"),
    )
    return _committed(_defect_detail(defect))


@uat_bp.route("/defects/<int:defect_id>/assign", methods=["POST"])
def assign_defect(defect_id):
    data = _body()
    err = require_fields(data, "assigned_to")
    if err:
        return err
    defect = defect_service.assign_defect(
        defect_id, data["assigned_to"], current_actor(),
        expected_version=data.get("expected_version"),
    )
    return _committed(_defect_detail(defect))
