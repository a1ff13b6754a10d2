"""
Caller-visible pipeline errors

Pipeline faults that callers must act on (bad arguments, ownership
violations, missing entities, illegal state) are raised as PipelineError
subclasses carrying a stable code. Routers translate the code into an HTTP
status; everything else is encoded in entity status fields instead of raised.
"""
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for caller-visible errors"""

    code = "internal"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class UnauthenticatedError(PipelineError):
    code = "unauthenticated"
    http_status = 401


class InvalidArgumentError(PipelineError):
    code = "invalid-argument"
    http_status = 400


class PermissionDeniedError(PipelineError):
    code = "permission-denied"
    http_status = 403


class NotFoundError(PipelineError):
    code = "not-found"
    http_status = 404


class FailedPreconditionError(PipelineError):
    code = "failed-precondition"
    http_status = 409
