"""
Custom exception classes and error handling.

Provides consistent error responses across the API:

    {"error": {"code": "...", "message": "..."}}
"""
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.extra = extra or {}


class UnauthorizedError(APIException):
    """Authentication required, or the Peloton credential must be re-linked."""

    def __init__(self, detail: str = "Authentication required", needs_reconnect: bool = False):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"},
            extra={"needsReconnect": True} if needs_reconnect else None,
        )


class ForbiddenError(APIException):
    """Access denied."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN"
        )


class ConflictError(APIException):
    """Resource conflict (e.g., a stack sync already running for this user)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class ServiceUnavailableError(APIException):
    """Upstream (Peloton) or server configuration failure."""

    def __init__(self, detail: str, status_code: int = status.HTTP_502_BAD_GATEWAY):
        super().__init__(
            status_code=status_code,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    body: Dict[str, Any] = {"error": {"code": exc.error_code, "message": exc.detail}}
    body.update(exc.extra)
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIException, api_exception_handler)
