"""
Defect lifecycle — reporting, assignment and resolution.
"""

import pytest

from app.core.exceptions import (
    IllegalTransitionError,
    NotesRequiredError,
    PermissionDeniedError,
    StaleStateError,
    UnauthorizedTransitionError,
    ValidationError,
)
from app.models import db as _db
from app.models.audit import AuditLog
from app.models.testing import Defect, TestExecution
from app.services import defect_service


@pytest.fixture()
def defect(story_factory, uat_tester, actor):
    story = story_factory("In UAT")
    created = defect_service.create_defect(
        {"story_id": story.id, "title": "Dosage rounds to zero", "severity": "high"},
        actor(uat_tester),
    )
    _db.session.commit()
    return created


class TestReporting:

    def test_create_defect(self, defect, uat_tester):
        assert defect.status == "open"
        assert defect.version == 1
        assert defect.reported_by == uat_tester.id
        assert defect.severity == "high"
        assert AuditLog.query.filter_by(action="defect.create").count() == 1

    def test_create_from_execution_copies_context(self, ready_test_case, uat_tester, actor):
        execution = TestExecution(
            test_case_id=ready_test_case.id, story_id=ready_test_case.story_id,
            assigned_to=uat_tester.id, status="failed", version=3, step_results=[],
            environment="staging",
        )
        _db.session.add(execution)
        _db.session.flush()

        created = defect_service.create_defect(
            {"execution_id": execution.id, "title": "Save button missing", "failed_step_number": 2},
            actor(uat_tester),
        )
        assert created.story_id == ready_test_case.story_id
        assert created.test_case_id == ready_test_case.id
        assert created.environment == "staging"
        assert created.failed_step_number == 2

    def test_failed_step_must_exist(self, ready_test_case, uat_tester, actor):
        execution = TestExecution(
            test_case_id=ready_test_case.id, story_id=ready_test_case.story_id,
            assigned_to=uat_tester.id, status="failed", version=1, step_results=[],
        )
        _db.session.add(execution)
        _db.session.flush()
        with pytest.raises(ValidationError):
            defect_service.create_defect(
                {"execution_id": execution.id, "title": "x", "failed_step_number": 7},
                actor(uat_tester),
            )

    def test_story_or_execution_required(self, program, uat_tester, actor):
        with pytest.raises(ValidationError):
            defect_service.create_defect({"title": "Orphan"}, actor(uat_tester))

    def test_developer_cannot_report(self, story_factory, developer, actor):
        story = story_factory("In UAT")
        with pytest.raises(PermissionDeniedError):
            defect_service.create_defect({"story_id": story.id, "title": "x"}, actor(developer))

    def test_invalid_severity(self, story_factory, uat_tester, actor):
        story = story_factory("In UAT")
        with pytest.raises(ValidationError):
            defect_service.create_defect({"story_id": story.id, "title": "x", "severity": "urgent"},
                                         actor(uat_tester))


class TestResolution:

    def test_happy_path_to_closed(self, defect, uat_manager, actor):
        manager = actor(uat_manager)
        defect_service.transition_defect(defect.id, "confirmed", manager)
        defect_service.transition_defect(defect.id, "in_progress", manager)
        fixed = defect_service.transition_defect(defect.id, "fixed", manager, notes="Rounding fixed")
        assert fixed.resolved_by == uat_manager.id
        assert fixed.resolved_at is not None

        defect_service.transition_defect(defect.id, "verified", manager)
        closed = defect_service.transition_defect(defect.id, "closed", manager)
        assert closed.status == "closed"
        assert closed.version == 6
        assert AuditLog.query.filter_by(action="defect.transition").count() == 5

    def test_open_cannot_jump_to_fixed(self, defect, uat_manager, actor):
        with pytest.raises(IllegalTransitionError):
            defect_service.transition_defect(defect.id, "fixed", actor(uat_manager), notes="done")

    def test_fixed_requires_notes(self, defect, uat_manager, actor):
        manager = actor(uat_manager)
        defect_service.transition_defect(defect.id, "confirmed", manager)
        defect_service.transition_defect(defect.id, "in_progress", manager)
        with pytest.raises(NotesRequiredError):
            defect_service.transition_defect(defect.id, "fixed", manager)

    def test_close_as_not_a_bug_needs_notes(self, defect, portfolio_manager, actor):
        with pytest.raises(NotesRequiredError):
            defect_service.transition_defect(defect.id, "closed", actor(portfolio_manager))
        closed = defect_service.transition_defect(defect.id, "closed", actor(portfolio_manager),
                                                  notes="Works as designed")
        assert closed.status == "closed"
        assert closed.resolved_by == portfolio_manager.id

    def test_program_manager_only_acts_in_progress(self, defect, uat_manager, program_manager, actor):
        with pytest.raises(UnauthorizedTransitionError):
            defect_service.transition_defect(defect.id, "confirmed", actor(program_manager))
        defect_service.transition_defect(defect.id, "confirmed", actor(uat_manager))
        defect_service.transition_defect(defect.id, "in_progress", actor(uat_manager))
        fixed = defect_service.transition_defect(defect.id, "fixed", actor(program_manager),
                                                 notes="Patched in 2.3.1")
        assert fixed.status == "fixed"

    def test_tester_cannot_move_defects(self, defect, uat_tester, actor):
        with pytest.raises(UnauthorizedTransitionError):
            defect_service.transition_defect(defect.id, "confirmed", actor(uat_tester))

    def test_reopen_clears_resolution(self, defect, admin, actor):
        admin_actor = actor(admin)
        defect_service.transition_defect(defect.id, "closed", admin_actor, notes="Duplicate")
        reopened = defect_service.transition_defect(defect.id, "open", admin_actor,
                                                    notes="Not a duplicate after all")
        assert reopened.status == "open"
        assert reopened.resolved_by is None
        assert reopened.resolved_at is None

    def test_regression_reopens_verified_defect(self, defect, uat_manager, actor):
        manager = actor(uat_manager)
        for target, notes in [("confirmed", None), ("in_progress", None),
                              ("fixed", "fix"), ("verified", None)]:
            defect_service.transition_defect(defect.id, target, manager, notes=notes)
        reopened = defect_service.transition_defect(defect.id, "in_progress", manager,
                                                    notes="Regression in build 42")
        assert reopened.status == "in_progress"
        assert reopened.resolved_by is None

    def test_stale_version(self, defect, uat_manager, actor):
        with pytest.raises(StaleStateError):
            defect_service.transition_defect(defect.id, "confirmed", actor(uat_manager),
                                             expected_version=0)
        assert _db.session.get(Defect, defect.id).status == "open"


class TestAssignment:

    def test_assign_and_reassign_same_user(self, defect, uat_manager, developer, actor):
        manager = actor(uat_manager)
        assigned = defect_service.assign_defect(defect.id, developer.id, manager)
        assert assigned.assigned_to == developer.id
        assert assigned.version == 2

        again = defect_service.assign_defect(defect.id, developer.id, manager)
        assert again.assigned_to == developer.id
        assert again.version == 2
        assert again.status == "open"
        assert AuditLog.query.filter_by(action="defect.assign").count() == 2

    def test_assign_in_any_status(self, defect, admin, developer, actor):
        defect_service.transition_defect(defect.id, "closed", actor(admin), notes="Not a bug")
        assigned = defect_service.assign_defect(defect.id, developer.id, actor(admin))
        assert assigned.status == "closed"
        assert assigned.assigned_to == developer.id

    def test_assignee_must_be_active(self, defect, uat_manager, developer, actor):
        developer.is_active = False
        _db.session.commit()
        with pytest.raises(ValidationError):
            defect_service.assign_defect(defect.id, developer.id, actor(uat_manager))

    def test_tester_cannot_assign(self, defect, uat_tester, developer, actor):
        with pytest.raises(PermissionDeniedError):
            defect_service.assign_defect(defect.id, developer.id, actor(uat_tester))

    def test_update_cannot_touch_status_or_assignee(self, defect, uat_manager, actor):
        with pytest.raises(ValidationError):
            defect_service.update_defect(defect.id, {"status": "closed"}, actor(uat_manager))
        with pytest.raises(ValidationError):
            defect_service.update_defect(defect.id, {"assigned_to": 1}, actor(uat_manager))


class TestDefectApi:

    def test_report_and_walk(self, client, story_factory, uat_tester, uat_manager, auth_header):
        story = story_factory("In UAT")
        res = client.post("/api/v1/uat/defects",
                          json={"story_id": story.id, "title": "Chart does not load"},
                          headers=auth_header(uat_tester))
        assert res.status_code == 201
        body = res.get_json()
        assert body["available_transitions"] == []
        defect_id = body["id"]

        manager = auth_header(uat_manager)
        res = client.post(f"/api/v1/uat/defects/{defect_id}/transition",
                          json={"to": "fixed", "notes": "x"}, headers=manager)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_ILLEGAL_TRANSITION"

        res = client.post(f"/api/v1/uat/defects/{defect_id}/transition",
                          json={"to": "confirmed", "expected_version": 1}, headers=manager)
        assert res.status_code == 200
        assert res.get_json()["status"] == "confirmed"

    def test_list_filters(self, client, defect, uat_manager, auth_header):
        headers = auth_header(uat_manager)
        res = client.get("/api/v1/uat/defects?severity=high", headers=headers)
        assert res.get_json()["total"] == 1
        res = client.get("/api/v1/uat/defects?status=closed", headers=headers)
        assert res.get_json()["total"] == 0
        res = client.get("/api/v1/uat/defects?q=dosage", headers=headers)
        assert res.get_json()["total"] == 1

    def test_assign_endpoint(self, client, defect, uat_manager, developer, auth_header):
        res = client.post(f"/api/v1/uat/defects/{defect.id}/assign",
                          json={"assigned_to": developer.id}, headers=auth_header(uat_manager))
        assert res.status_code == 200
        assert res.get_json()["assigned_to"] == developer.id
