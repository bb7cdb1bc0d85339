"""
Mio Backend — Error taxonomy

Every service-level failure is raised as a subclass of :class:`MioError`.
The API layer converts them to JSON responses with a single exception
handler (see :func:`install_error_handlers`), so services never import
FastAPI.
"""

from __future__ import annotations

import math
from datetime import timedelta

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class MioError(Exception):
    """Base class for errors surfaced to callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.code

    def to_payload(self) -> dict:
        return {"detail": self.message, "code": self.code}


class UnauthenticatedError(MioError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"


class InvalidInputError(MioError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_argument"


class NotFoundError(MioError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDeniedError(MioError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class CooldownActiveError(MioError):
    """The caller must wait ``retry_after`` before trying again."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "cooldown_active"

    def __init__(self, retry_after: timedelta, message: str = "") -> None:
        super().__init__(message or "Search cooldown is still active.")
        self.retry_after = retry_after

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil(self.retry_after.total_seconds()))

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


class InternalError(MioError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal"


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MioError)
    async def mio_error_handler(request: Request, exc: MioError) -> JSONResponse:
        headers = None
        if isinstance(exc, CooldownActiveError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_payload(),
            headers=headers,
        )
