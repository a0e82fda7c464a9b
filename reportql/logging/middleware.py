import getpass
import json
import logging
import os
import platform
import socket
import time
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from reportql.core.config import get_settings
from reportql.core.database import SessionLocal
from reportql.logging.models import Log

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Writes one Log row per API request to the config database."""

    excluded_paths = ["/api/docs", "/api/redoc", "/api/openapi.json"]

    def __init__(self, app: ASGIApp, session_factory: Optional[Callable] = None):
        super().__init__(app)
        self.session_factory = session_factory or SessionLocal
        try:
            self.username = (
                os.environ.get("USER")
                or os.environ.get("USERNAME")
                or getpass.getuser()
                or "unknown_user"
            )
        except Exception:
            self.username = "unknown_user"

        try:
            self.hostname = socket.gethostname() or platform.node() or "unknown_host"
        except Exception:
            self.hostname = "unknown_host"

        self.application_id = get_settings().application_id
        logger.info(
            "Logging middleware initialized with username: %s on host: %s, App ID: %s",
            self.username,
            self.hostname,
            self.application_id,
        )

    async def dispatch(self, request: Request, call_next: Callable):
        if any(request.url.path.startswith(path) for path in self.excluded_paths):
            return await call_next(request)

        start_time = time.time()

        body_bytes = await request.body()
        request_body = body_bytes.decode("utf-8", errors="ignore")

        # Reconstruct stream
        async def receive() -> dict:
            return {"type": "http.request", "body": body_bytes}

        request = Request(request.scope, receive=receive)

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        status_code = response.status_code
        response_body = b""

        if hasattr(response, "body_iterator"):
            original_iterator = response.body_iterator
            chunks = []

            async def buffer_iterator():
                nonlocal response_body
                async for chunk in original_iterator:
                    chunks.append(chunk)
                    yield chunk
                response_body = b"".join(chunks)

            response.body_iterator = buffer_iterator()
        elif hasattr(response, "body"):
            response_body = response.body

        def log_to_db():
            body_to_log = response_body.decode("utf-8", errors="ignore") if response_body else None
            error_kind = None
            if status_code >= 400 and body_to_log:
                try:
                    error_kind = json.loads(body_to_log).get("kind")
                except (ValueError, AttributeError):
                    error_kind = None
            try:
                with self.session_factory() as session:
                    session.add(
                        Log(
                            timestamp=datetime.now(),
                            method=request.method,
                            path=str(request.url.path),
                            status_code=status_code,
                            client_ip=request.client.host if request.client else None,
                            request_body=request_body,
                            response_body=body_to_log,
                            error_kind=error_kind,
                            processing_time=duration_ms,
                            user_agent=request.headers.get("user-agent"),
                            username=self.username,
                            hostname=self.hostname,
                            application_id=self.application_id,
                        )
                    )
                    session.commit()
            except Exception:
                logger.exception("Failed to write request log for %s %s", request.method, request.url.path)

        response.background = getattr(response, "background", None) or BackgroundTask(log_to_db)
        return response
