"""Orchestrator exceptions and the JSON error envelope.

Each exception knows its HTTP status, so the API layer maps errors
generically.  Background loops catch :class:`ExternalCallError` and
:class:`UnmappableStageNameError` where they occur; a bad CI response
never stops a tick.
"""


class OrchestratorError(Exception):
    """Root of the orchestrator's exceptions.  Defaults to 500."""

    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        super().__init__(message or self.default_message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(OrchestratorError):
    status_code = 404
    default_message = "Not found"


class BadRequestError(OrchestratorError):
    status_code = 400
    default_message = "Bad request"


class StateConflictError(OrchestratorError):
    """The queue item or build is in a state that forbids the operation."""

    status_code = 409
    default_message = "Invalid state"

    def __init__(self, message: str | None = None, *, current_state: str | None = None):
        super().__init__(message)
        self.current_state = current_state


class ExternalCallError(OrchestratorError):
    """The CI backend rejected a call or could not be reached."""

    status_code = 502
    default_message = "CI backend call failed"


class UnmappableStageNameError(OrchestratorError):
    """A CI stage label that is not Build, SAM or Coverity."""

    status_code = 400

    def __init__(self, label: str):
        super().__init__(f"Unmappable stage name: {label!r}")
        self.label = label


def format_error_response(*, error: str, detail: object = None, request_id: str = "") -> dict:
    """Return the ``{"error", "detail", "request_id"}`` body.

    *detail* falls back to *error* when omitted.
    """
    return {
        "error": error,
        "detail": error if detail is None else detail,
        "request_id": request_id,
    }
