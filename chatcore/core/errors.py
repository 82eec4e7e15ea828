"""
Domain errors and their HTTP rendering.

Services raise these; routers let them propagate and the handlers registered
in ``create_app`` turn them into JSON responses.
"""

import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError


logger = logging.getLogger(__name__)


class ChatError(Exception):

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "error"

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class InvalidPayload(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_payload"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class Unavailable(ChatError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "unavailable"


class AuthenticationError(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Request validation failed",
            "code": InvalidPayload.code,
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "internal_error"},
    )


async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=Unavailable.status_code,
        content={"detail": "The message store is unavailable", "code": Unavailable.code},
    )
