# backend/carechat/errors.py
"""
Typed errors shared by the HTTP routes and the realtime gateway.

They are HTTPExceptions so FastAPI maps them to status codes without extra
handlers; the gateway catches them per event and turns `detail` into an
`error` frame for the originating connection.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status


class ChatError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Something went wrong"

    def __init__(self, detail: Optional[str] = None, headers: Optional[dict] = None) -> None:
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers,
        )

    @property
    def message(self) -> str:
        return str(self.detail)


class BadRequest(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Bad request"


class Unauthorized(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Forbidden"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"
