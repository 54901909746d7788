from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadhub.api.routes import router as api_router
from leadhub.core.config import get_settings
from leadhub.core.events import InternalEvent, event_bus
from leadhub.logging import configure_logging
from leadhub.middleware.correlation_id import CorrelationIdMiddleware
from leadhub.middleware.request_logging import RequestLoggingMiddleware
from leadhub.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadhub.lifecycle")
_subscriptions_registered = False

_lead_event_types = [
    "crm.lead.created",
    "crm.lead.updated",
    "crm.lead.deleted",
    "crm.activity.created",
    "crm.activity.updated",
    "crm.activity.deleted",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_lead_domain_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    lead_id = payload.get("lead_id") if isinstance(payload, dict) else None
    logger.debug("crm.domain_event", extra={"event_name": event.name, "lead_id": lead_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe_many(_lead_event_types, _on_lead_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("leadhub-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
