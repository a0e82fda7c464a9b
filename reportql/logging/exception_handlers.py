# reportql/logging/exception_handlers.py

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from reportql.query.errors import QueryCompilationError

logger = logging.getLogger(__name__)


async def query_compilation_exception_handler(request: Request, exc: QueryCompilationError):
    """Return the structured compilation error so the UI can highlight the offending part."""
    logger.warning(
        "Query compilation failed on %s %s: %s (%s)", request.method, request.url.path, exc.message, exc.kind
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors"""
    logger.info("Request validation failed on %s %s", request.method, request.url.path)

    # Convert errors to a safe format for JSON response
    def convert_error(error):
        if isinstance(error, dict):
            return {k: convert_error(v) for k, v in error.items()}
        elif isinstance(error, (list, tuple)):
            return [convert_error(item) for item in error]
        else:
            return str(error)

    return JSONResponse(status_code=422, content={"detail": convert_error(exc.errors())})


async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error("HTTP %s on %s %s: %s", exc.status_code, request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
