"""
Service-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ReviewSession", resource_id=session_id)
    raise ValidationError("Answer text is required", details={"answer": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested session, question or answer does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ReviewSession", "Question").
        resource_id: The identifier that was looked up.
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
    """Raised when input is well-formed JSON but violates a business rule.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a resource.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value conflicts (e.g. "status").
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} {field}={value!r} does not allow this operation"
        super().__init__(msg)


class InvalidStateError(Exception):
    """Raised when a review session is asked to take an illegal state edge.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class NotReadyError(Exception):
    """Raised when the final report is requested before the session completed.

    Maps to HTTP 409.
    """

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Review {session_id} is not completed yet (status={status})")


class UpstreamFatalError(Exception):
    """Raised when the environment data provider fails as a whole.

    Individual collector failures never raise; they are recorded in the
    snapshot. This is only for "no snapshot at all" (provider raised, or the
    bounded wait for the collection expired).
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)
