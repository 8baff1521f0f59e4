# quoteflow/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import init_db
from .errors import QuoteflowError
from .logging_config import configure_logging
from .middleware.request_id import RequestIDMiddleware, get_request_id
from .middleware.structured_logging import StructuredLoggingMiddleware
from .routers.audit import router as audit_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.payments import router as payments_router
from .routers.pricing import router as pricing_router
from .routers.quotes import router as quotes_router

API_PREFIX = "/api"

log = logging.getLogger("quoteflow.api")


def _cors_origins() -> list[str]:
    val = getattr(settings, "cors_allow_origins", ["*"])
    if isinstance(val, str):
        v = val.strip()
        return ["*"] if v == "*" else [x.strip() for x in v.split(",") if x.strip()]
    if isinstance(val, list) and val:
        return val
    return ["*"]


async def _quoteflow_error_handler(request: Request, exc: QuoteflowError) -> JSONResponse:
    if exc.http_status >= 500:
        log.error("request_failed", extra={"event": exc.code, "path": request.url.path})
    else:
        log.info("request_rejected", extra={"event": exc.code, "path": request.url.path})
    body = {"error": exc.code, "detail": exc.message, **exc.context()}
    rid = get_request_id()
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=exc.http_status, content=body)


def create_app() -> FastAPI:
    configure_logging()
    init_db()

    app = FastAPI(title="Quoteflow", version=settings.app_version)

    # Request-ID wraps logging so every request line carries it
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(QuoteflowError, _quoteflow_error_handler)

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(pricing_router, prefix=API_PREFIX)
    app.include_router(quotes_router, prefix=API_PREFIX)
    app.include_router(jobs_router, prefix=API_PREFIX)
    app.include_router(payments_router, prefix=API_PREFIX)
    app.include_router(audit_router, prefix=API_PREFIX)
    return app


app = create_app()
