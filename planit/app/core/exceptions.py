"""
Custom exceptions for consistent error reporting.

Provides standardized error codes and the helper that turns any failure into
the single human-readable message surfaced to the presentation layer.
"""

from typing import Any, Dict, Optional

import httpx


class PlanItError(Exception):
    """Base planning core exception."""
    
    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class BackendError(PlanItError):
    """Raised when the backend API answers with a non-2xx status."""
    
    def __init__(self, status_code: int, message: Optional[str] = None, details: Dict[str, Any] = None):
        self.backend_message = message
        super().__init__(
            message=message or f"Backend request failed with status {status_code}",
            error_code=f"ERR_BACKEND_{status_code}",
            status_code=status_code,
            details=details
        )

    @classmethod
    def from_response(cls, response: httpx.Response) -> "BackendError":
        """Build the error from a response, keeping the backend's own wording."""
        message = None
        body: Any = None
        try:
            body = response.json()
        except ValueError:
            body = None
        
        if isinstance(body, dict):
            for key in ("error", "message", "detail"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    message = value
                    break
        
        return cls(
            status_code=response.status_code,
            message=message,
            details={"method": response.request.method, "path": response.request.url.path}
        )


class PlanningValidationError(PlanItError):
    """Raised for local validation failures that never reach the network."""
    
    def __init__(self, message: str, errors: Dict[str, str] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION",
            status_code=422,
            details={"errors": errors or {}}
        )


class ResourceNotFoundError(PlanItError):
    """Raised when a referenced entity is not present locally."""
    
    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=404,
            details={"resource": resource, "id": resource_id}
        )


class PendingRecordError(PlanItError):
    """Raised when a mutation targets a record the backend has not confirmed yet."""
    
    def __init__(self, temp_id: str):
        super().__init__(
            message="Assignment is still being saved.",
            error_code="ERR_PENDING_001",
            status_code=409,
            details={"temp_id": temp_id}
        )


def error_message(exc: BaseException, fallback: str) -> str:
    """
    Pick the message shown to the user for a failed operation.
    
    Backend wording is used verbatim when the backend sent one, local
    validation messages are always shown, anything else gets the fallback.
    """
    if isinstance(exc, BackendError):
        return exc.backend_message or fallback
    if isinstance(exc, PlanItError):
        return exc.message
    return fallback
