from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from cadence.db import engine
from cadence.db.models import Base
from cadence.logging_config import (
    configure_logging,
    log_with_fields,
    reset_request_id,
    set_request_id,
)
from cadence.settings import get_settings
from cadence.web.routes import router as web_router

logger = logging.getLogger("cadence.http")

_FEED_PREFIX = "/calendar-feed/"


def _loggable_path(request: Request) -> str:
    # Feed tokens grant read access to a calendar.
    path = request.url.path
    if path.startswith(_FEED_PREFIX):
        return f"{_FEED_PREFIX}<token>"
    return path


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings.auto_create_db:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        yield

    app = FastAPI(title="cadence", lifespan=lifespan)

    @app.exception_handler(LookupError)
    async def not_found_handler(request: Request, exc: LookupError) -> JSONResponse:
        log_with_fields(
            logger,
            logging.INFO,
            "lookup failed",
            path=_loggable_path(request),
            missing=str(exc),
        )
        return JSONResponse(status_code=404, content={"detail": "Not found"})

    @app.middleware("http")
    async def request_logging_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = (request.headers.get("x-request-id") or "").strip() or uuid4().hex
        token = set_request_id(request_id)
        start = perf_counter()

        def _elapsed() -> str:
            return f"{(perf_counter() - start) * 1000:.2f}"

        try:
            try:
                response = await call_next(request)
            except Exception:
                if settings.log_http_requests:
                    log_with_fields(
                        logger,
                        logging.ERROR,
                        "request failed",
                        method=request.method,
                        path=_loggable_path(request),
                        duration_ms=_elapsed(),
                        exc_info=True,
                    )
                raise

            response.headers["X-Request-ID"] = request_id
            if settings.log_http_requests:
                log_with_fields(
                    logger,
                    logging.INFO,
                    "request complete",
                    method=request.method,
                    path=_loggable_path(request),
                    status_code=response.status_code,
                    duration_ms=_elapsed(),
                )
            return response
        finally:
            reset_request_id(token)

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(web_router)

    return app


app = create_app()
