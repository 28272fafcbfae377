from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base error carrying a wire code and the HTTP status it maps to."""

    code = "AGENT_FAILURE"
    http_status = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        if code:
            self.code = code


class NotFoundError(PipelineError):
    code = "NOT_FOUND"
    http_status = 404


class MissingUpstreamResult(NotFoundError):
    code = "MISSING_UPSTREAM_RESULT"


class UnauthorizedError(PipelineError):
    code = "UNAUTHORIZED"
    http_status = 401


class InvalidRequestError(PipelineError):
    code = "INVALID_REQUEST"
    http_status = 400


class StageConflict(PipelineError):
    """The invoked stage is not the active stage of the request."""

    code = "STAGE_CONFLICT"
    http_status = 409


class OutputValidationError(PipelineError):
    """Collaborator output did not match the stage result schema."""

    code = "VALIDATION_ERROR"


class UpstreamFailure(PipelineError):
    code = "UPSTREAM_FAILURE"


class ProcessingTimeout(PipelineError):
    code = "PROCESSING_TIMEOUT"


class HandoffFailure(PipelineError):
    code = "HANDOFF_FAILED"


class ConcurrentModification(PipelineError):
    code = "CONCURRENT_MODIFICATION"
    http_status = 409


class InvalidTransition(PipelineError):
    code = "INVALID_TRANSITION"
    http_status = 409
