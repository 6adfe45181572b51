"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and get
consistent HTTP status codes everywhere.

    NotFoundError    -> 404  referenced definition/step/transition/instance/
                             task/document/role/user does not exist
    ValidationError  -> 400  business-rule violation, including "not allowed
                             for this user" (there is no separate 403 kind in
                             the workflow core)
    anything else    -> 500

Usage:
    from docflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowInstance", resource_id=42)
    raise ValidationError("Invalid transition for current step")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowTask").
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
    """Raised when a request violates a workflow business rule.

    The message is human readable; when several rules fail at once they are
    joined with ", " and the individual messages are kept in ``errors``.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        errors: Optional list of individual rule violations.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        errors: list[str] | None = None,
    ) -> None:
        self.details = details or {}
        self.errors = list(errors) if errors else [message]
        super().__init__(message)

    @classmethod
    def from_errors(cls, errors: list[str], details: dict | None = None) -> "ValidationError":
        return cls(", ".join(errors), details=details, errors=errors)


class ConcurrentModificationError(ValidationError):
    """Raised when an optimistic version check fails on a workflow instance."""

    def __init__(self, resource: str, resource_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} id={resource_id} was modified concurrently; reload and retry"
        )
