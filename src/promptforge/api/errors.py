"""Exception handlers mapping service errors to the shared error body.

Every error response has the shape::

    {"error": {"code": "INSUFFICIENT_CREDITS", "message": "...", "details": {...}}}
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from promptforge.services.exceptions import ServiceError, ValidationError

logger = structlog.get_logger()


def error_body(code: str, message: str, details: dict | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            "api.service_error",
            path=request.url.path,
            code=exc.code,
            error_message=exc.message,
        )
    else:
        logger.info("api.request_rejected", path=request.url.path, code=exc.code)

    return JSONResponse(
        status_code=exc.http_status, content=error_body(exc.code, exc.message, exc.details)
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(ValidationError.code, "Invalid request", {"errors": errors}),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
