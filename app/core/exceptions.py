"""
Domain error taxonomy for the lending service.

Services raise these; the handler registered in ``main.py`` renders them as
JSON responses with the matching HTTP status.
"""
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class LendingError(Exception):
    """Base class for all lending domain errors"""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "LENDING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationError(LendingError):
    """Malformed amount, phone or missing fields"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class NotFoundError(LendingError):
    """Unknown loan or user"""
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class LimitExceededError(LendingError):
    """A lending limit would be violated by the request"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, violations: List[Dict[str, Any]] = None, code: Optional[str] = None, **extra: Any):
        super().__init__(message, code=code, violations=violations or [], **extra)
        self.violations = violations or []


class InvalidTransitionError(LendingError):
    """Illegal loan status change"""
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, action: str):
        super().__init__(
            f"Action '{action}' is not allowed for a loan in '{current_status}' status",
            current_status=current_status,
            action=action,
        )
        self.current_status = current_status
        self.action = action


class GatewayError(LendingError):
    """Credential, transport or provider failure during payment initiation"""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, provider_message: Optional[str] = None):
        super().__init__(message, provider_message=provider_message)
        self.provider_message = provider_message


class DuplicateOrUnknownCallback(LendingError):
    """Callback for a payment request that is already settled or never existed"""
    status_code = status.HTTP_200_OK
    code = "DUPLICATE_OR_UNKNOWN_CALLBACK"


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    """Render a domain error as JSON"""
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))
