"""
Workflow error taxonomy shared by the supply and activity services.

Services raise these; views translate them into ``{"errors": {...}}`` responses
using ``http_status`` and ``field``.
"""

from rest_framework.response import Response


class WorkflowError(Exception):
    """Base class for workflow failures surfaced to API callers."""

    http_status = 400
    default_code = "workflow_error"
    field = "detail"

    def __init__(self, message: str, code: str | None = None, field: str | None = None):
        self.message = message
        self.code = code or self.default_code
        if field:
            self.field = field
        super().__init__(message)


class ValidationFailed(WorkflowError):
    """Request payload is missing or malformed."""

    http_status = 400
    default_code = "invalid"


class NotFound(WorkflowError):
    """Need, batch, registration or activity does not exist."""

    http_status = 404
    default_code = "not_found"


class InvalidTransition(WorkflowError):
    """The entity's current status does not allow the requested change."""

    http_status = 409
    default_code = "invalid_transition"
    field = "status"


class PersistenceFailure(WorkflowError):
    """
    The store rejected a write. The underlying database error is chained as
    ``__cause__`` and exposed on ``cause``.
    """

    http_status = 500
    default_code = "persistence_failure"

    def __init__(self, message: str, cause: BaseException | None = None, code: str | None = None):
        self.cause = cause
        super().__init__(message, code=code)


def error_response(exc: WorkflowError) -> Response:
    """Render a workflow error the way every view reports failures."""
    return Response({"errors": {exc.field: exc.message}}, status=exc.http_status)
