from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from relayrag.apps.api.errors import (
    http_exception_handler,
    relay_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from relayrag.apps.api.routes.admin import router as admin_router
from relayrag.apps.api.routes.chat import router as chat_router
from relayrag.apps.api.routes.health import router as health_router
from relayrag.core.config import get_settings
from relayrag.core.errors import RelayError
from relayrag.core.logging import configure_logging
from relayrag.persistence.db import SessionLocal
from relayrag.providers.llm.factory import ProviderRegistry, build_provider_registry
from relayrag.services.escalation.notifier import EscalationNotifier
from relayrag.services.escalation.service import build_db_notifier
from relayrag.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(
    *,
    registry: ProviderRegistry | None = None,
    notifier: EscalationNotifier | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Vendor clients and the notifier are built once and injected per request.
        app.state.provider_registry = registry or build_provider_registry()
        app.state.escalation_notifier = notifier or build_db_notifier(SessionLocal)
        logger.info("app_started vendors=%s", ",".join(v.value for v in app.state.provider_registry.vendors()))
        yield
        # Give in-flight escalation deliveries a chance to finish.
        await app.state.escalation_notifier.drain()

    app = FastAPI(title=f"{settings.app_name} API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
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

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RelayError, relay_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(chat_router)
    app.include_router(admin_router)
    return app


app = create_app()
