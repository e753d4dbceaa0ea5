"""
Test case authoring, human review of generated cases and lifecycle.
"""

import pytest

from app.core.exceptions import (
    NotesRequiredError,
    PermissionDeniedError,
    UnauthorizedTransitionError,
    ValidationError,
)
from app.models import db as _db
from app.models.testing import TestCase, TestExecution
from app.services import execution_service, test_case_service
from app.utils.errors import E

GENERATED = [
    {
        "title": "Reject expired prescription",
        "test_type": "negative",
        "test_steps": [
            {"action": "Open an expired prescription", "expected_result": "Warning shown"},
            {"action": "Try to dispense", "expected_result": "Dispense blocked"},
        ],
    },
    {"title": "Dispense valid prescription", "test_steps": [{"action": "Dispense"}]},
]


@pytest.fixture()
def uat_story(story_factory):
    return story_factory("In UAT")


class TestSteps:

    def test_steps_numbered_by_position(self):
        steps = test_case_service.normalize_steps([{"action": "a"}, {"action": "b"}])
        assert [s["step_number"] for s in steps] == [1, 2]
        assert steps[0]["expected_result"] == ""

    def test_explicit_numbers_are_sorted(self):
        steps = test_case_service.normalize_steps([
            {"step_number": 3, "action": "c"}, {"step_number": 1, "action": "a"},
        ])
        assert [s["step_number"] for s in steps] == [1, 3]

    @pytest.mark.parametrize("steps", [
        "not a list",
        [{"step_number": 1, "action": "a"}, {"step_number": 1, "action": "b"}],
        [{"action": "  "}],
        ["step"],
    ])
    def test_invalid_steps(self, steps):
        with pytest.raises(ValidationError):
            test_case_service.normalize_steps(steps)


class TestAuthoring:

    def test_manual_case_is_draft_and_needs_no_review(self, uat_story, uat_manager, actor):
        case = test_case_service.create_test_case(
            uat_story.id, {"title": "Manual case", "test_steps": [{"action": "Do it"}]},
            actor(uat_manager),
        )
        assert case.status == "draft"
        assert case.is_ai_generated is False

        case = test_case_service.transition_test_case(case.id, "ready", actor(uat_manager))
        assert case.status == "ready"

    def test_tester_cannot_author(self, uat_story, uat_tester, actor):
        with pytest.raises(PermissionDeniedError):
            test_case_service.create_test_case(uat_story.id, {"title": "x"}, actor(uat_tester))

    def test_invalid_test_type(self, uat_story, uat_manager, actor):
        with pytest.raises(ValidationError):
            test_case_service.create_test_case(uat_story.id, {"title": "x", "test_type": "smoke"},
                                               actor(uat_manager))


class TestGeneratedCases:

    def test_ingested_cases_are_unreviewed_drafts(self, uat_story, program_manager, actor):
        cases = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED,
                                                              actor(program_manager))
        assert len(cases) == 2
        assert all(c.is_ai_generated and not c.human_reviewed for c in cases)
        assert all(c.status == "draft" for c in cases)
        assert cases[0].step_numbers == [1, 2]

    def test_generated_case_cannot_be_marked_ready_unreviewed(self, uat_story, uat_manager, actor):
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED,
                                                                  actor(uat_manager))
        with pytest.raises(ValidationError) as exc:
            test_case_service.transition_test_case(case.id, "ready", actor(uat_manager))
        assert exc.value.code == E.REVIEW_REQUIRED
        assert _db.session.get(TestCase, case.id).status == "draft"

    def test_review_moves_draft_to_ready(self, uat_story, uat_manager, actor):
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED,
                                                                  actor(uat_manager))
        case = test_case_service.review_test_case(case.id, actor(uat_manager), notes="Checked")
        assert case.status == "ready"
        assert case.human_reviewed is True
        assert case.reviewed_by == uat_manager.id
        assert case.version == 2

    def test_editing_steps_requires_another_review(self, uat_story, uat_manager, uat_tester, actor):
        manager = actor(uat_manager)
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED, manager)
        case = test_case_service.review_test_case(case.id, manager)

        case = test_case_service.update_test_case(
            case.id, {"test_steps": [{"action": "Different step"}]}, manager,
        )
        assert case.human_reviewed is False
        assert case.reviewed_by is None
        assert case.status == "draft"
        with pytest.raises(ValidationError):
            execution_service.assign_executions(case.id, [uat_tester.id], manager)
        assert TestExecution.query.count() == 0

        case = test_case_service.update_test_case(case.id, {"title": "Renamed"}, manager)
        assert case.title == "Renamed"

    def test_tester_cannot_review(self, uat_story, uat_manager, uat_tester, actor):
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED,
                                                                  actor(uat_manager))
        with pytest.raises(PermissionDeniedError):
            test_case_service.review_test_case(case.id, actor(uat_tester))

    def test_unreviewed_case_cannot_be_assigned(self, uat_story, uat_manager, uat_tester, actor):
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED,
                                                                  actor(uat_manager))
        # Forced into ready without a review
        case.status = "ready"
        _db.session.commit()
        with pytest.raises(ValidationError) as exc:
            execution_service.assign_executions(case.id, [uat_tester.id], actor(uat_manager))
        assert exc.value.code == E.REVIEW_REQUIRED

    def test_assignable_again_after_re_review(self, uat_story, uat_manager, uat_tester, actor):
        manager = actor(uat_manager)
        (case, _) = test_case_service.ingest_generated_test_cases(uat_story.id, GENERATED, manager)
        test_case_service.review_test_case(case.id, manager)
        test_case_service.update_test_case(case.id, {"test_steps": [{"action": "Dispense twice"}]},
                                           manager)

        case = test_case_service.review_test_case(case.id, manager)
        assert case.status == "ready"
        (execution,) = execution_service.assign_executions(case.id, [uat_tester.id], manager)
        assert execution.status == "assigned"


class TestLifecycle:

    def test_running_case_cannot_be_edited(self, ready_test_case, uat_manager, actor):
        manager = actor(uat_manager)
        test_case_service.transition_test_case(ready_test_case.id, "in_progress", manager)
        with pytest.raises(ValidationError):
            test_case_service.update_test_case(ready_test_case.id, {"title": "Late edit"}, manager)

    def test_deprecate_needs_notes_and_is_terminal(self, ready_test_case, admin, actor):
        with pytest.raises(NotesRequiredError):
            test_case_service.transition_test_case(ready_test_case.id, "deprecated", actor(admin))
        case = test_case_service.transition_test_case(ready_test_case.id, "deprecated", actor(admin),
                                                      notes="Superseded")
        assert case.status == "deprecated"
        assert test_case_service.get_available_test_case_actions(case, actor(admin)) == []
        with pytest.raises(UnauthorizedTransitionError):
            test_case_service.transition_test_case(case.id, "draft", actor(admin), notes="undo")


class TestTestCaseApi:

    def test_ingest_and_review(self, client, uat_story, uat_manager, auth_header):
        headers = auth_header(uat_manager)
        res = client.post("/api/v1/uat/test-cases/generated",
                          json={"story_id": uat_story.id, "test_cases": GENERATED}, headers=headers)
        assert res.status_code == 201
        case_id = res.get_json()["items"][0]["id"]

        res = client.post(f"/api/v1/uat/test-cases/{case_id}/transition",
                          json={"to": "ready"}, headers=headers)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_REVIEW_REQUIRED"

        res = client.post(f"/api/v1/uat/test-cases/{case_id}/review", json={}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "ready"

        res = client.get(f"/api/v1/uat/test-cases?story_id={uat_story.id}&is_ai_generated=true",
                         headers=headers)
        assert res.get_json()["total"] == 2
