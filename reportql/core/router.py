# reportql/core/router.py
"""
Module for registering routes in the FastAPI application.
"""

from fastapi import FastAPI

from reportql.reporting.router import router as reporting_router


def register_routes(app: FastAPI) -> None:
    """
    Registers all the routes for the FastAPI application.

    Args:
        app (FastAPI): The FastAPI application instance.
    """
    app.include_router(reporting_router, prefix="/api")
