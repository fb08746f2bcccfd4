# errors.py
"""
Domain exceptions and the FastAPI exception handlers that turn every
failure into a JSON body with a human-readable `message` field.
"""

import logging
from typing import Dict, List

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger(__name__)

FieldError = Dict[str, str]


class OrderValidationError(Exception):
    """Raised by storage.create_order before any write happens."""

    def __init__(self, errors: List[FieldError]):
        super().__init__("; ".join(f"{e['field']}: {e['message']}" for e in errors))
        self.errors = errors


class DuplicatePendingVerificationError(Exception):
    """The user already has a verification request waiting for review."""


class VerificationAlreadyReviewedError(Exception):
    """The request is in a terminal state (approved or rejected)."""


def _field_name(loc) -> str:
    # Drop the 'body'/'query'/'path' prefix FastAPI adds to locations
    parts = [str(p) for p in loc]
    if parts and parts[0] in ("body", "query", "path", "header", "cookie"):
        parts = parts[1:]
    return ".".join(parts) or "body"


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": _field_name(err.get("loc", ())), "message": err.get("msg", "Invalid value")}
              for err in exc.errors()]
    log.warning(f"Invalid payload for {request.method} {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid payload", "errors": errors},
    )


async def order_validation_exception_handler(request: Request, exc: OrderValidationError):
    log.warning(f"Order rejected: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid order", "errors": exc.errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    log.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(OrderValidationError, order_validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
