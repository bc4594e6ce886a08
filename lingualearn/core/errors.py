"""Error taxonomy for the quiz core and the JSON error envelope used by the HTTP layer."""
from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class QuizError(Exception):
    code = "quiz_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(QuizError):
    """A referenced quiz, question or session does not exist."""

    code = "not_found"
    status_code = 404


class ValidationError(QuizError):
    """Malformed caller input, e.g. an empty answer or a question outside the active session."""

    code = "validation_error"
    status_code = 422


class InvalidStateError(QuizError):
    """Operation attempted against a completed session or other state-machine misuse."""

    code = "invalid_state"
    status_code = 409


class OutOfRangeError(InvalidStateError):
    code = "out_of_range"


class PersistenceError(QuizError):
    """A document store operation failed; carries the store's own message."""

    code = "persistence_error"
    status_code = 503

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def quiz_exception_handler(request: Request, exc: QuizError):
    if isinstance(exc, PersistenceError):
        logger.warning("Persistence failure | request_id=%s | %s", get_request_id(request), exc.message)
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=exc.errors(),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception | request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request.state.request_id = incoming or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response
