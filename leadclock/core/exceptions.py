"""
Custom exceptions for LeadClock.
Services raise these; the API layer maps them to HTTP responses.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse


class LeadClockException(Exception):
    """Base exception for LeadClock"""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "ERROR"

    def __init__(self, message: str = "An error occurred", code: str = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(self.message)


class NotFoundError(LeadClockException):
    """Resource not found or outside the caller's workspace"""
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", resource_id: str = None, code: str = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message, code)


class UnauthorizedError(LeadClockException):
    """Authentication failed"""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message)


class ForbiddenError(LeadClockException):
    """Access denied"""
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"

    def __init__(self, message: str = "You don't have permission to access this resource"):
        super().__init__(message)


class WorkspaceMismatchError(ForbiddenError):
    """A referenced entity belongs to a different workspace"""
    code = "WORKSPACE_MISMATCH"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} belongs to a different workspace")


class ValidationError(LeadClockException):
    """Validation failed"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed", field: str = None):
        if field:
            message = f"Validation failed for field '{field}': {message}"
        super().__init__(message)


class SLAAlreadyRunningError(LeadClockException):
    """The lead already has an SLA clock"""
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_RUNNING"

    def __init__(self, lead_id: str = None):
        message = "SLA clock already exists"
        if lead_id:
            message = f"SLA clock already exists for lead '{lead_id}'"
        super().__init__(message)


class ExternalServiceError(LeadClockException):
    """External service call failed"""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str = "External service", message: str = None):
        msg = f"{service} call failed"
        if message:
            msg = f"{msg}: {message}"
        super().__init__(msg)


class AIPlannerError(ExternalServiceError):
    """Chat completion timed out, failed, or returned an unusable decision"""
    code = "AI_PLANNER_ERROR"

    def __init__(self, message: str = None):
        super().__init__("AI planner", message)


class MessagingProviderError(ExternalServiceError):
    """Messaging provider rejected or failed to send a message"""
    code = "PROVIDER_ERROR"

    def __init__(self, provider: str = "Messaging provider", message: str = None):
        super().__init__(provider, message)


async def leadclock_exception_handler(request: Request, exc: LeadClockException) -> JSONResponse:
    """Render domain exceptions as JSON error responses."""
    headers = None
    if isinstance(exc, UnauthorizedError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )
