"""
Platform-wide exception hierarchy.

Services raise these; the app factory registers one handler per type and
maps them to HTTP status codes and machine-readable error codes
(see ``app.utils.errors.E``). Blueprints never translate them by hand.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Story", resource_id=42)
    raise NotesRequiredError("Out of Scope")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Story", "Defect").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        code: Optional error code override (``app.utils.errors.E``).
    """

    code = None

    def __init__(self, message: str, details: dict | None = None, code: str | None = None) -> None:
        self.details = details or {}
        if code:
            self.code = code
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class StaleStateError(Exception):
    """Raised when a conditional write finds the row no longer matches what the writer read.

    Someone else changed the item between read and write. The caller must
    re-read and retry by explicit user action; never retried automatically.
    Maps to HTTP 409.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str,
        expected_status: str | None = None,
        expected_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_status = expected_status
        self.expected_version = expected_version
        super().__init__(
            f"{resource} {resource_id} was changed by someone else, please refresh"
        )


class AuthenticationError(Exception):
    """No valid session for a protected endpoint. Maps to HTTP 401."""


class PermissionDeniedError(Exception):
    """Acting user may not perform the requested action. Maps to HTTP 403."""


class UnknownRoleError(PermissionDeniedError):
    """Role string from the identity store is not one of the known roles."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Unknown role {value!r}")


# ── Workflow errors ──────────────────────────────────────────────────────


class UnauthorizedTransitionError(PermissionDeniedError):
    """Role is absent, or not allowed to act on the entity in its current status."""

    def __init__(self, entity: str, status: str, role: str | None) -> None:
        self.entity = entity
        self.status = status
        self.role = role
        who = role or "anonymous user"
        super().__init__(f"{who} cannot act on this {entity} while it is '{status}'")


class OwnershipError(PermissionDeniedError):
    """Actor is neither the owner of the item nor a supervising role."""


class SegregationOfDutiesError(PermissionDeniedError):
    """The verifier of a test result is the same identity that executed it."""


class IllegalTransitionError(ValidationError):
    """Target status is not a legal edge from the current status."""

    code = "ERR_ILLEGAL_TRANSITION"

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            details={"from": current, "to": target},
        )


class NotesRequiredError(ValidationError):
    """Transition requires a non-empty justification note."""

    code = "ERR_NOTES_REQUIRED"

    def __init__(self, target: str, label: str | None = None) -> None:
        self.target = target
        action = label or f"moving to '{target}'"
        super().__init__(
            f"Notes are required for {action}",
            details={"notes": "required", "to": target},
        )


class ApprovalRequiredError(ValidationError):
    """Transition requires a recorded approval of a specific kind."""

    code = "ERR_APPROVAL_REQUIRED"

    def __init__(self, target: str, approval_kind: str | None) -> None:
        self.target = target
        self.approval_kind = approval_kind
        super().__init__(
            f"A recorded '{approval_kind}' approval is required before moving to '{target}'",
            details={"approval_kind": approval_kind, "to": target},
        )


class AcknowledgmentRequiredError(PermissionDeniedError):
    """Tester has not given the cycle's identity / HIPAA acknowledgment yet."""

    def __init__(self, cycle_id: int, user_id: int | None) -> None:
        self.cycle_id = cycle_id
        self.user_id = user_id
        super().__init__(
            "The tester must complete the cycle acknowledgment before working on its test data"
        )
