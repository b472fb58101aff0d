from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from peerlink.apps.api.errors import (
    http_exception_handler,
    peerlink_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from peerlink.apps.api.response import API_VERSION
from peerlink.apps.api.routes.commands import router as commands_router
from peerlink.apps.api.routes.conversations import router as conversations_router
from peerlink.apps.api.routes.health import router as health_router
from peerlink.apps.api.routes.hooks import router as hooks_router
from peerlink.apps.api.routes.identity import router as identity_router
from peerlink.core.config import Settings, get_settings
from peerlink.core.errors import PeerlinkError
from peerlink.core.logging import configure_logging
from peerlink.persistence.db import Database, create_database
from peerlink.services.auth.tokens import TokenVerifier, build_verifier
from peerlink.services.identity import IdentityResolver
from peerlink.services.ledger import MessageLedger
from peerlink.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    verifier: TokenVerifier | None = None,
) -> FastAPI:
    configure_logging()
    settings = settings or get_settings()
    db = db or create_database(settings)
    if verifier is None:
        verifier = build_verifier(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app_started verification=%s require_verified=%s",
            verifier.mode.value if verifier is not None else "disabled",
            settings.scope_require_verified,
        )
        yield
        await db.dispose()
        logger.info("app_stopped store_disposed=true")

    app = FastAPI(title="Peerlink Identity API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.resolver = IdentityResolver(db, verifier, settings=settings)
    app.state.ledger = MessageLedger(db, settings=settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PeerlinkError, peerlink_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Health stays reachable unversioned for load balancers.
    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}", include_in_schema=False)
    app.include_router(identity_router, prefix=f"/{API_VERSION}")
    app.include_router(hooks_router, prefix=f"/{API_VERSION}")
    app.include_router(commands_router, prefix=f"/{API_VERSION}")
    app.include_router(conversations_router, prefix=f"/{API_VERSION}")

    return app
