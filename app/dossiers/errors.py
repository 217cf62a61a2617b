from __future__ import annotations


class WorkflowError(ValueError):
    """Base class for every rejected dossier operation.

    Subclasses ``ValueError`` so callers that only care about "the request
    was refused" can keep catching ``ValueError``. ``code`` is the stable
    machine-readable kind and ``details`` carries the structured cause
    (hold type, open task count, ...).
    """

    code = "WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    http_status = 409


class InvalidState(WorkflowError):
    code = "INVALID_STATE"
    http_status = 409


class Forbidden(WorkflowError):
    code = "FORBIDDEN"
    http_status = 403


class ReasonRequired(WorkflowError):
    code = "REASON_REQUIRED"
    http_status = 422


class AlreadyHeld(WorkflowError):
    code = "ALREADY_HELD"
    http_status = 409


class NotHeld(WorkflowError):
    code = "NOT_HELD"
    http_status = 409


class Conflict(WorkflowError):
    code = "CONFLICT"
    http_status = 409


class NotFound(WorkflowError):
    code = "NOT_FOUND"
    http_status = 404


class FlowRequired(WorkflowError):
    code = "FLOW_REQUIRED"
    http_status = 422


class Blocked(WorkflowError):
    code = "BLOCKED"
    http_status = 423


class InvalidInput(WorkflowError):
    code = "INVALID_INPUT"
    http_status = 422


class AuditWriteFailed(WorkflowError):
    code = "AUDIT_WRITE_FAILED"
    http_status = 500


MAX_REASON_LENGTH = 500


def optional_text(value: str | None, what: str = "reason", max_length: int = MAX_REASON_LENGTH) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) > max_length:
        raise InvalidInput(f"The {what} is longer than {max_length} characters", max_length=max_length)
    return cleaned


def require_reason(reason: str | None, what: str = "reason") -> str:
    cleaned = optional_text(reason, what)
    if not cleaned:
        raise ReasonRequired(f"A {what} is required")
    return cleaned
