"""
Story Service — story CRUD, approvals and the approval workflow.

Transaction policy: functions flush, never commit. The route handler commits
(``db_commit_or_error``) so the status change, the approval/version rows
and the audit row land in one transaction.

Workflow rules live in ``app.core.story_workflow``; every status write goes
through ``authorize_transition`` + ``compare_and_set_status``.

Usage:
    from app.services.story_service import transition_story_status

    story = transition_story_status(
        story_id=42,
        target="Out of Scope",
        actor=Actor(user_id=7, role=Role.PROGRAM_MANAGER),
        notes="Descoped in steering committee",
    )
"""

import logging

from app.core.exceptions import PermissionDeniedError, ValidationError
from app.core.roles import Role, can_manage_stories
from app.core.story_workflow import (
    APPROVAL_DECISIONS,
    DELETE_PROTECTED_STATUSES,
    STATUS_DATE_FIELDS,
    STORY_PRIORITIES,
    STORY_TRANSITIONS,
    ApprovalKind,
    StoryStatus,
    required_approval_kinds,
)
from app.models import db
from app.models.audit import write_audit
from app.models.program import Program
from app.models.story import Story, StoryApproval, StoryVersion
from app.services.status_writer import check_expected_version, compare_and_set_status
from app.services.workflow_dispatcher import authorize_transition, available_actions
from app.utils.errors import E
from app.utils.helpers import clean_text, get_or_404, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "user_story", "acceptance_criteria", "priority")


# ── Helpers ──────────────────────────────────────────────────────────────────

def _require_manager(actor, action):
    if not can_manage_stories(actor.role):
        raise PermissionDeniedError(f"Your role cannot {action} stories")


def _validate_priority(priority):
    if priority is not None and priority not in STORY_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'",
            details={"priority": sorted(STORY_PRIORITIES)},
        )


def _add_version(story, changed_by, changed_fields, summary):
    version = StoryVersion(
        story_id=story.id,
        version_number=story.version,
        snapshot=story.snapshot(),
        change_summary=summary,
        changed_by=changed_by,
        changed_fields=list(changed_fields),
    )
    db.session.add(version)
    return version


def has_current_approval(story, approval_kind):
    """True when the latest decision of this kind on the story's current version is ``approved``.

    A later rejection at the same version withdraws an earlier approval.
    """
    latest = (
        StoryApproval.query.filter_by(
            story_id=story.id,
            approval_kind=getattr(approval_kind, "value", approval_kind),
            story_version=story.version,
        )
        .order_by(StoryApproval.created_at.desc(), StoryApproval.id.desc())
        .first()
    )
    return latest is not None and latest.decision == "approved"


# ── Queries ──────────────────────────────────────────────────────────────────

def get_story(story_id):
    return get_or_404(Story, story_id)


def list_stories(program_id=None, status=None, priority=None, search=None):
    q = Story.query
    if program_id is not None:
        q = q.filter(Story.program_id == program_id)
    if status:
        q = q.filter(Story.status == status)
    if priority:
        q = q.filter(Story.priority == priority)
    if search:
        q = q.filter(Story.title.ilike(f"%{search}%"))
    return q.order_by(Story.id.desc())


def get_available_story_actions(story, actor):
    """Transitions the actor may take from the story's current status."""
    return available_actions("story", story.status, actor.role)


# ── CRUD ─────────────────────────────────────────────────────────────────────

def create_story(program_id, data, actor):
    """Create a story in Draft with an initial version snapshot."""
    _require_manager(actor, "create")
    get_or_404(Program, program_id)

    title = clean_text(data.get("title"))
    if not title:
        raise ValidationError("title is required")
    priority = data.get("priority") or "medium"
    _validate_priority(priority)

    now = utcnow()
    story = Story(
        program_id=program_id,
        title=title,
        user_story=data.get("user_story") or "",
        acceptance_criteria=data.get("acceptance_criteria") or "",
        priority=priority,
        status=StoryStatus.DRAFT.value,
        version=1,
        draft_date=now,
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )
    db.session.add(story)
    db.session.flush()

    _add_version(story, actor.user_id, EDITABLE_FIELDS, "Story created")
    write_audit(
        entity_type="story",
        entity_id=story.id,
        action="story.create",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        to_status=story.status,
        diff={"title": {"old": None, "new": title}},
    )
    logger.info("Story created", extra={"entity_type": "story", "entity_id": story.id,
                                        "actor_id": actor.user_id})
    return story


def update_story(story_id, data, actor, expected_version=None):
    """Edit descriptive fields. Status is only changed by ``transition_story_status``."""
    _require_manager(actor, "edit")
    story = get_or_404(Story, story_id)
    check_expected_version(story, expected_version, "Story")

    if "status" in data:
        raise ValidationError("status cannot be edited directly; use a workflow transition")

    values, diff = {}, {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        new = data[field]
        if field == "title":
            new = clean_text(new)
            if not new:
                raise ValidationError("title cannot be empty")
        if field == "priority":
            _validate_priority(new)
        old = getattr(story, field)
        if new != old:
            values[field] = new
            diff[field] = {"old": old, "new": new}

    if not values:
        return story

    previous_version = story.version
    values["updated_by"] = actor.user_id
    story = compare_and_set_status(Story, story.id, story.status, previous_version, values)

    _add_version(story, actor.user_id, diff.keys(),
                 data.get("change_summary") or f"Updated {', '.join(diff)}")
    write_audit(
        entity_type="story",
        entity_id=story.id,
        action="story.update",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        diff=diff,
    )
    return story


def delete_story(story_id, actor):
    """Delete a story. Admin only; client-approved stories in delivery are protected."""
    if actor.role != Role.ADMIN:
        raise PermissionDeniedError("Only administrators can delete stories")
    story = get_or_404(Story, story_id)

    status = STORY_TRANSITIONS.parse_status(story.status)
    if story.stakeholder_approved_at and status in DELETE_PROTECTED_STATUSES:
        raise ValidationError(
            "Cannot delete stories that have been client-approved and are in "
            "Approved, Development, or UAT status"
        )

    write_audit(
        entity_type="story",
        entity_id=story.id,
        action="story.delete",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        from_status=story.status,
        diff={"title": {"old": story.title, "new": None}},
    )
    db.session.delete(story)
    db.session.flush()
    logger.info("Story deleted", extra={"entity_type": "story", "entity_id": story_id,
                                        "actor_id": actor.user_id})


# ── Approvals ────────────────────────────────────────────────────────────────

def record_story_approval(story_id, approval_kind, actor, decision="approved", notes=None):
    """Append an approval decision bound to the story's current version.

    The kind must be one demanded by an edge out of the current status;
    recording a decision does not move the story.
    """
    story = get_or_404(Story, story_id)

    if not STORY_TRANSITIONS.role_may_act(story.status, actor.role):
        raise PermissionDeniedError(
            f"Your role cannot record approvals on stories in '{story.status}'"
        )

    kind = getattr(approval_kind, "value", approval_kind)
    if kind not in {k.value for k in ApprovalKind}:
        raise ValidationError(f"Unknown approval kind '{kind}'")
    required = required_approval_kinds(story.status)
    if kind not in required:
        raise ValidationError(
            f"No '{kind}' approval is pending for a story in '{story.status}'",
            details={"required": sorted(required)},
        )
    if decision not in APPROVAL_DECISIONS:
        raise ValidationError(
            f"Invalid decision '{decision}'",
            details={"decision": sorted(APPROVAL_DECISIONS)},
        )
    notes = clean_text(notes)
    if decision != "approved" and not notes:
        raise ValidationError("Notes are required when an approval is not granted",
                              code=E.NOTES_REQUIRED)

    approval = StoryApproval(
        story_id=story.id,
        approval_kind=kind,
        decision=decision,
        approved_by=actor.user_id,
        previous_status=story.status,
        story_version=story.version,
        notes=notes,
    )
    db.session.add(approval)
    db.session.flush()

    write_audit(
        entity_type="story",
        entity_id=story.id,
        action="story.approval",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        from_status=story.status,
        notes=notes,
        diff={"approval": {"old": None, "new": {"kind": kind, "decision": decision,
                                                "story_version": story.version}}},
    )
    logger.info(
        "Story approval recorded: %s=%s", kind, decision,
        extra={"entity_type": "story", "entity_id": story.id, "actor_id": actor.user_id},
    )
    return approval


def list_story_approvals(story_id):
    story = get_or_404(Story, story_id)
    return story.approvals.all()


def list_story_versions(story_id):
    story = get_or_404(Story, story_id)
    return story.versions.all()


# ── Transitions ──────────────────────────────────────────────────────────────

def transition_story_status(story_id, target, actor, notes=None, expected_version=None):
    """Move a story along one permitted edge.

    Raises the dispatcher's workflow errors, ``ApprovalRequiredError`` when a
    gated edge has no approval for the current version, or
    ``StaleStateError`` when the row changed underneath the caller.
    """
    story = get_or_404(Story, story_id)
    check_expected_version(story, expected_version, "Story")
    notes = clean_text(notes)

    edge = STORY_TRANSITIONS.find_transition(story.status, target)
    has_approval = None
    if edge is not None and edge.requires_approval:
        has_approval = has_current_approval(story, edge.approval_kind)

    transition = authorize_transition(
        "story", story.status, target, actor.role,
        notes=notes, has_approval=has_approval,
    )

    from_status = story.status
    to_status = transition.to
    now = utcnow()
    values = {"status": to_status.value, "updated_by": actor.user_id}
    date_field = STATUS_DATE_FIELDS.get(to_status)
    if date_field:
        values[date_field] = now
    if to_status == StoryStatus.APPROVED:
        values["approved_at"] = now
        values["approved_by"] = actor.user_id
    if transition.approval_kind == ApprovalKind.STAKEHOLDER.value:
        values["stakeholder_approved_at"] = now
        values["stakeholder_approved_by"] = actor.user_id

    story = compare_and_set_status(Story, story.id, from_status, story.version, values)

    if notes:
        _add_version(
            story, actor.user_id, ["status"],
            f"Status changed from {from_status} to {to_status.value}: {notes}",
        )
    write_audit(
        entity_type="story",
        entity_id=story.id,
        action="story.transition",
        actor_user_id=actor.user_id,
        actor_role=actor.role_name,
        from_status=from_status,
        to_status=to_status.value,
        notes=notes,
        diff={"status": {"old": from_status, "new": to_status.value}},
    )
    logger.info(
        "Story status changed: %s -> %s", from_status, to_status.value,
        extra={"entity_type": "story", "entity_id": story.id, "from_status": from_status,
               "to_status": to_status.value, "actor_id": actor.user_id},
    )
    return story
