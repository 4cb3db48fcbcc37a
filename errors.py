"""
Error taxonomy and the FastAPI handlers that turn failures into JSON.

Every user-visible failure carries a human-readable ``message`` and a
machine-readable ``code``.
"""

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppOrbitError(Exception):
    """Base class for errors raised by the service layer."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class InvalidIdError(AppOrbitError):
    status_code = 400
    code = "INVALID_ID"

    def __init__(self, message: str = "Invalid id"):
        super().__init__(message)


class UnauthenticatedError(AppOrbitError):
    status_code = 401
    code = "UNAUTHENTICATED"


class ForbiddenError(AppOrbitError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppOrbitError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppOrbitError):
    status_code = 409
    code = "CONFLICT"


class UpstreamError(AppOrbitError):
    """An external collaborator (media host, identity provider) failed."""

    status_code = 502
    code = "UPSTREAM_ERROR"


async def apporbit_error_handler(request: Request, exc: AppOrbitError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail), "code": "HTTP_ERROR"},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=422,
        content={"message": message, "code": "VALIDATION_ERROR", "errors": jsonable_errors(errors)},
    )


def jsonable_errors(errors) -> list:
    # ctx may hold exception instances that are not JSON serializable
    return [{k: v for k, v in e.items() if k in ("loc", "msg", "type")} for e in errors]


async def store_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"message": "Database error", "code": "STORE_ERROR"})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error", "code": "INTERNAL_ERROR"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppOrbitError, apporbit_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
