"""
Middleware configuration for the standalone FastAPI app.
"""

from __future__ import annotations

import os
import time
import uuid

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

import core.config as config

REQUEST_ID_HEADER = "X-Request-ID"


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.monotonic()
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    config.logger.info(
        "http_request_completed",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "request_id": request_id,
        },
    )
    return response


def configure_middleware(app) -> None:
    """Configure request logging, host allowlist and CORS for the FastAPI app."""
    app.middleware("http")(request_logging_middleware)

    # Optional host allowlist for production deployments
    trusted_hosts = _env_list("TRUSTED_HOSTS")
    if trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    allow_origins = _env_list("CORS_ALLOWED_ORIGINS") or [
        os.environ.get("FRONTEND_URL", "http://localhost:3000"),
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
