"""FastAPI application entry point for the reporting query service."""

import logging
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from reportql.core.config import get_settings
from reportql.core.database import init_db
from reportql.core.router import register_routes
from reportql.logging.exception_handlers import (
    general_exception_handler,
    http_exception_handler,
    query_compilation_exception_handler,
    request_validation_exception_handler,
)
from reportql.logging.middleware import LoggingMiddleware
from reportql.query.errors import QueryCompilationError


def create_app(log_session_factory: Optional[Callable] = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="reportql",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    init_db()

    # Add request logger middleware
    app.add_middleware(LoggingMiddleware, session_factory=log_session_factory)

    app.add_exception_handler(QueryCompilationError, query_compilation_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, replace with specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app
