from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.engine import get_engine, register_audit_forwarding
from app.platform.errors import LifecycleError
from app.platform.http import to_http_exception


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        register_audit_forwarding(event_bus)
        _subscriptions_registered = True

    settings = get_settings()
    if settings.rehydrate_timers_on_startup:
        engine = get_engine()
        with engine.session_factory() as session:
            summary = engine.approval_service.rehydrate_timers(session)
        logger.info("approval_timers_rehydrated", extra=summary.model_dump())
        with engine.session_factory() as session:
            engine.lifecycle_manager.rehydrate_timers(session)

    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Lifecycle Governance API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    return await http_exception_handler(request, to_http_exception(exc))


settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
