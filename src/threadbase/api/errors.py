"""Exception handlers mapping domain errors to HTTP responses.

Every ThreadbaseError renders as {"detail": exc.detail} with the class's
status code. NotAuthorized and TenantNotFound share one body so an
outsider cannot tell a missing tenant from a tenant they do not belong to.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.threadbase.core.errors import ThreadbaseError

logger = structlog.get_logger(__name__)


async def handle_threadbase_error(request: Request, exc: ThreadbaseError) -> JSONResponse:
    log_method = logger.error if exc.status_code >= 500 else logger.info
    log_method(
        "api.domain_error",
        error=type(exc).__name__,
        message=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ThreadbaseError, handle_threadbase_error)
