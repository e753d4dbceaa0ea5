"""
Story approval workflow — service layer and HTTP.

Covers:
    - Draft → Internal Review → Pending Client Review with a recorded approval
    - approvals are bound to the story version they were given on
    - notes-required edges, role gating, Out of Scope reopen
    - status date stamping, versions and the audit trail
    - delete protection
    - HTTP mapping: 401 / 403 / 422 / 409
"""

import pytest

from app.core.exceptions import (
    ApprovalRequiredError,
    IllegalTransitionError,
    NotesRequiredError,
    PermissionDeniedError,
    StaleStateError,
    UnauthorizedTransitionError,
    ValidationError,
)
from app.models import db as _db
from app.models.audit import AuditLog
from app.models.story import Story, StoryApproval
from app.services import story_service
from app.utils.helpers import utcnow


def _audit_actions(story_id):
    rows = (AuditLog.query
            .filter_by(entity_type="story", entity_id=str(story_id))
            .order_by(AuditLog.id).all())
    return [r.action for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Service layer
# ═════════════════════════════════════════════════════════════════════════════

class TestCreateAndUpdate:

    def test_create_story_starts_in_draft(self, program, program_manager, actor):
        story = story_service.create_story(
            program.id, {"title": "  Patient intake form  ", "priority": "high"},
            actor(program_manager),
        )
        assert story.status == "Draft"
        assert story.version == 1
        assert story.title == "Patient intake form"
        assert story.draft_date is not None
        assert story.created_by == program_manager.id
        assert [v.version_number for v in story.versions] == [1]
        assert _audit_actions(story.id) == ["story.create"]

    def test_create_story_requires_manager(self, program, uat_tester, actor):
        with pytest.raises(PermissionDeniedError):
            story_service.create_story(program.id, {"title": "x"}, actor(uat_tester))

    def test_create_story_rejects_bad_priority(self, program, program_manager, actor):
        with pytest.raises(ValidationError):
            story_service.create_story(program.id, {"title": "x", "priority": "urgent"},
                                       actor(program_manager))

    def test_update_bumps_version_and_records_snapshot(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        updated = story_service.update_story(
            story.id, {"title": "Renamed", "acceptance_criteria": "Given..."},
            actor(program_manager), expected_version=1,
        )
        assert updated.version == 2
        assert updated.title == "Renamed"
        latest = updated.versions.all()[-1]
        assert latest.version_number == 2
        assert latest.snapshot["title"] == "Renamed"
        assert sorted(latest.changed_fields) == ["acceptance_criteria", "title"]

    def test_update_without_changes_keeps_version(self, story_factory, program_manager, actor):
        story = story_factory("Draft", title="Same")
        updated = story_service.update_story(story.id, {"title": "Same"}, actor(program_manager))
        assert updated.version == 1

    def test_update_cannot_change_status(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(ValidationError):
            story_service.update_story(story.id, {"status": "Approved"}, actor(program_manager))

    def test_update_with_stale_version_is_refused(self, story_factory, program_manager, actor):
        story = story_factory("Draft", version=3)
        with pytest.raises(StaleStateError):
            story_service.update_story(story.id, {"title": "New"}, actor(program_manager),
                                       expected_version=2)
        assert _db.session.get(Story, story.id).title != "New"


class TestApprovalFlow:

    def test_submit_approve_and_send_to_client(self, program, program_manager, actor):
        pgm = actor(program_manager)
        story = story_service.create_story(program.id, {"title": "Medication list"}, pgm)

        story = story_service.transition_story_status(story.id, "Internal Review", pgm)
        assert story.status == "Internal Review"
        assert story.version == 2
        assert story.internal_review_date is not None

        with pytest.raises(ApprovalRequiredError) as exc:
            story_service.transition_story_status(story.id, "Pending Client Review", pgm)
        assert exc.value.approval_kind == "internal_review"
        assert story.status == "Internal Review"

        approval = story_service.record_story_approval(story.id, "internal_review", pgm)
        assert approval.story_version == 2
        assert approval.previous_status == "Internal Review"
        assert _db.session.get(Story, story.id).version == 2

        story = story_service.transition_story_status(story.id, "Pending Client Review", pgm)
        assert story.status == "Pending Client Review"
        assert story.version == 3
        assert story.client_review_date is not None
        assert _audit_actions(story.id) == [
            "story.create", "story.transition", "story.approval", "story.transition",
        ]

    def test_stakeholder_approval_stamps_story(self, story_factory, portfolio_manager, actor):
        pfm = actor(portfolio_manager)
        story = story_factory("Pending Client Review")
        story_service.record_story_approval(story.id, "stakeholder", pfm)

        story = story_service.transition_story_status(story.id, "Approved", pfm)
        assert story.status == "Approved"
        assert story.approved_by == portfolio_manager.id
        assert story.stakeholder_approved_by == portfolio_manager.id
        assert story.stakeholder_approved_at is not None

    def test_approval_is_invalidated_by_a_later_edit(self, story_factory, program_manager, actor):
        pgm = actor(program_manager)
        story = story_factory("Internal Review", version=4)
        story_service.record_story_approval(story.id, "internal_review", pgm)

        story_service.update_story(story.id, {"user_story": "As a nurse I want..."}, pgm)

        with pytest.raises(ApprovalRequiredError):
            story_service.transition_story_status(story.id, "Pending Client Review", pgm)
        assert story_service.has_current_approval(_db.session.get(Story, story.id),
                                                  "internal_review") is False

    def test_rejected_decision_does_not_satisfy_the_edge(self, story_factory, program_manager, actor):
        pgm = actor(program_manager)
        story = story_factory("Internal Review")
        story_service.record_story_approval(story.id, "internal_review", pgm,
                                            decision="rejected", notes="Missing consent step")
        with pytest.raises(ApprovalRequiredError):
            story_service.transition_story_status(story.id, "Pending Client Review", pgm)

    def test_later_rejection_withdraws_approval(self, story_factory, program_manager, actor):
        pgm = actor(program_manager)
        story = story_factory("Internal Review")
        story_service.record_story_approval(story.id, "internal_review", pgm)
        story_service.record_story_approval(story.id, "internal_review", pgm,
                                            decision="rejected", notes="Consent wording changed")

        with pytest.raises(ApprovalRequiredError):
            story_service.transition_story_status(story.id, "Pending Client Review", pgm)
        assert _db.session.get(Story, story.id).status == "Internal Review"

        story_service.record_story_approval(story.id, "internal_review", pgm)
        moved = story_service.transition_story_status(story.id, "Pending Client Review", pgm)
        assert moved.status == "Pending Client Review"

    def test_non_approved_decision_needs_notes(self, story_factory, program_manager, actor):
        story = story_factory("Internal Review")
        with pytest.raises(ValidationError):
            story_service.record_story_approval(story.id, "internal_review",
                                                actor(program_manager), decision="rejected")

    def test_approval_kind_must_be_pending(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(ValidationError):
            story_service.record_story_approval(story.id, "internal_review", actor(program_manager))
        assert StoryApproval.query.count() == 0

    def test_gated_role_cannot_record_approval(self, story_factory, developer, actor):
        story = story_factory("Internal Review")
        with pytest.raises(PermissionDeniedError):
            story_service.record_story_approval(story.id, "internal_review", actor(developer))


class TestNotesAndRoles:

    def test_out_of_scope_needs_notes(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(NotesRequiredError):
            story_service.transition_story_status(story.id, "Out of Scope", actor(program_manager),
                                                  notes="   ")
        assert _db.session.get(Story, story.id).status == "Draft"

    def test_out_of_scope_with_notes_records_version(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        story = story_service.transition_story_status(
            story.id, "Out of Scope", actor(program_manager), notes="Descoped by steering group",
        )
        assert story.status == "Out of Scope"
        latest = story.versions.all()[-1]
        assert "Descoped by steering group" in latest.change_summary
        log = AuditLog.query.filter_by(action="story.transition").one()
        assert log.notes == "Descoped by steering group"
        assert log.from_status == "Draft" and log.to_status == "Out of Scope"

    def test_developer_cannot_act_on_draft(self, story_factory, developer, actor):
        story = story_factory("Draft")
        with pytest.raises(UnauthorizedTransitionError):
            story_service.transition_story_status(story.id, "Internal Review", actor(developer))

    def test_developer_moves_story_to_uat(self, story_factory, developer, actor):
        story = story_factory("In Development")
        story = story_service.transition_story_status(story.id, "In UAT", actor(developer))
        assert story.status == "In UAT"

    def test_program_manager_cannot_reopen_out_of_scope(self, story_factory, program_manager, actor):
        story = story_factory("Out of Scope")
        with pytest.raises(UnauthorizedTransitionError):
            story_service.transition_story_status(story.id, "Draft", actor(program_manager),
                                                  notes="Back in")

    def test_portfolio_manager_reopens_out_of_scope(self, story_factory, portfolio_manager, actor):
        story = story_factory("Out of Scope")
        story = story_service.transition_story_status(
            story.id, "Draft", actor(portfolio_manager), notes="Client re-prioritised",
        )
        assert story.status == "Draft"
        assert story.draft_date is not None

    def test_undeclared_edge_is_illegal(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(IllegalTransitionError):
            story_service.transition_story_status(story.id, "Approved", actor(program_manager))

    def test_unknown_target_is_rejected(self, story_factory, program_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(ValidationError):
            story_service.transition_story_status(story.id, "Shipped", actor(program_manager))

    def test_available_actions_follow_role(self, story_factory, developer, program_manager, actor):
        story = story_factory("Draft")
        assert story_service.get_available_story_actions(story, actor(developer)) == []
        targets = [t.to.value for t in story_service.get_available_story_actions(
            story, actor(program_manager))]
        assert targets == ["Internal Review", "Needs Discussion", "Out of Scope"]


class TestDeleteStory:

    def test_admin_deletes_unprotected_story(self, story_factory, admin, actor):
        story = story_factory("Approved")
        story_service.delete_story(story.id, actor(admin))
        assert _db.session.get(Story, story.id) is None
        assert AuditLog.query.filter_by(action="story.delete").count() == 1

    def test_client_approved_story_in_delivery_is_protected(self, story_factory, admin, actor):
        story = story_factory("In Development", stakeholder_approved_at=utcnow())
        with pytest.raises(ValidationError):
            story_service.delete_story(story.id, actor(admin))

    def test_only_admin_deletes(self, story_factory, portfolio_manager, actor):
        story = story_factory("Draft")
        with pytest.raises(PermissionDeniedError):
            story_service.delete_story(story.id, actor(portfolio_manager))


# ═════════════════════════════════════════════════════════════════════════════
# HTTP
# ═════════════════════════════════════════════════════════════════════════════

class TestStoryApi:

    def test_requires_authentication(self, client):
        res = client.get("/api/v1/stories")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_create_and_get(self, client, program, program_manager, auth_header):
        headers = auth_header(program_manager)
        res = client.post("/api/v1/stories", json={"program_id": program.id, "title": "Allergy alerts"},
                          headers=headers)
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "Draft"
        assert [t["to"] for t in body["available_transitions"]] == [
            "Internal Review", "Needs Discussion", "Out of Scope",
        ]

        res = client.get(f"/api/v1/stories/{body['id']}", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["title"] == "Allergy alerts"

    def test_create_missing_title_is_400(self, client, program, program_manager, auth_header):
        res = client.post("/api/v1/stories", json={"program_id": program.id},
                          headers=auth_header(program_manager))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_full_approval_path(self, client, story_factory, program_manager, auth_header):
        headers = auth_header(program_manager)
        story = story_factory("Draft")

        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Internal Review"}, headers=headers)
        assert res.status_code == 200

        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Pending Client Review"}, headers=headers)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_APPROVAL_REQUIRED"

        res = client.post(f"/api/v1/stories/{story.id}/approvals",
                          json={"approval_kind": "internal_review"}, headers=headers)
        assert res.status_code == 201

        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Pending Client Review", "expected_version": 2}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "Pending Client Review"
        assert res.get_json()["version"] == 3

        res = client.get(f"/api/v1/stories/{story.id}/approvals", headers=headers)
        assert res.get_json()["total"] == 1

    def test_notes_required_is_422(self, client, story_factory, program_manager, auth_header):
        story = story_factory("Draft")
        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Out of Scope"}, headers=auth_header(program_manager))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_NOTES_REQUIRED"

    def test_illegal_edge_is_422(self, client, story_factory, program_manager, auth_header):
        story = story_factory("Draft")
        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "In UAT"}, headers=auth_header(program_manager))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_ILLEGAL_TRANSITION"

    def test_gated_role_is_403(self, client, story_factory, developer, auth_header):
        story = story_factory("Draft")
        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Internal Review"}, headers=auth_header(developer))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"
        assert _db.session.get(Story, story.id).status == "Draft"

    def test_stale_version_is_409(self, client, story_factory, program_manager, auth_header):
        story = story_factory("Draft", version=5)
        res = client.post(f"/api/v1/stories/{story.id}/transition",
                          json={"to": "Internal Review", "expected_version": 4},
                          headers=auth_header(program_manager))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        assert _db.session.get(Story, story.id).status == "Draft"

    def test_missing_story_is_404(self, client, program_manager, auth_header):
        res = client.get("/api/v1/stories/9999", headers=auth_header(program_manager))
        assert res.status_code == 404

    def test_delete_protected_is_422(self, client, story_factory, admin, auth_header):
        story = story_factory("In UAT", stakeholder_approved_at=utcnow())
        res = client.delete(f"/api/v1/stories/{story.id}", headers=auth_header(admin))
        assert res.status_code == 422
        assert _db.session.get(Story, story.id) is not None

    def test_versions_endpoint(self, client, program, program_manager, auth_header):
        headers = auth_header(program_manager)
        story_id = client.post("/api/v1/stories", json={"program_id": program.id, "title": "Vitals"},
                               headers=headers).get_json()["id"]
        client.put(f"/api/v1/stories/{story_id}", json={"title": "Vitals chart"}, headers=headers)
        res = client.get(f"/api/v1/stories/{story_id}/versions", headers=headers)
        assert [v["version_number"] for v in res.get_json()["items"]] == [1, 2]

    def test_workflow_endpoint(self, client, program_manager, auth_header):
        res = client.get("/api/v1/stories/workflow", headers=auth_header(program_manager))
        assert res.status_code == 200
        assert set(res.get_json()) >= {"Draft", "Out of Scope"}
