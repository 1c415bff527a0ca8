"""
Service-layer exception hierarchy.

Services raise these; blueprints register handlers against them once
and map them to HTTP status codes:

    NotFoundError                 -> 404
    ValidationError               -> 422
    InvalidStateTransitionError   -> 409
    UnauthorizedError             -> 403

DeliveryFailedError never reaches an HTTP caller. The notification
dispatcher raises and catches it internally and records it on the
notification row.

Usage:
    from pmis.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("Reason is required", details={"reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced task, report, contract or user does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Task", "ProgressReport").
        resource_id: The PK that was looked up.
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
    """Raised when well-formed input violates a business rule.

    Always raised before any row is written.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateTransitionError(Exception):
    """Raised when an action is attempted from a state that does not allow it.

    No mutation has happened when this is raised.

    Args:
        entity: "progress_report", "task", "extension_request", "payment".
        action: The attempted action or target state.
        current: The state the entity was actually in.
        allowed: States from which the action would have been valid.
    """

    def __init__(self, entity: str, action: str, current: str | None,
                 allowed: list[str] | None = None) -> None:
        self.entity = entity
        self.action = action
        self.current = current
        self.allowed = allowed or []
        msg = f"Cannot {action} {entity} in state '{current}'"
        if self.allowed:
            msg += f" (allowed from: {', '.join(self.allowed)})"
        super().__init__(msg)


class UnauthorizedError(Exception):
    """Raised when the acting user may not perform the operation (e.g. assignment policy)."""


class DeliveryFailedError(Exception):
    """Raised when an email or Telegram delivery attempt fails or times out."""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel} delivery failed: {reason}")
