from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.ticketing.api import dispatch_error_response
from app.ticketing.errors import QuotationDispatchError


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_quotation_event_types = [
    "ticketing.quotation.sent",
    "ticketing.quotation.rejected",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event %s", event.name)


def _on_quotation_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    payload = event.payload.get("payload") or {}
    logger.info(
        "domain_event %s",
        event.name,
        extra={
            "quotation_id": payload.get("quotation_id"),
            "opportunity_id": payload.get("opportunity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _quotation_event_types:
            event_bus.subscribe(event_name, _on_quotation_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Quotation Dispatch API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(QuotationDispatchError)
async def handle_quotation_dispatch_error(request: Request, exc: QuotationDispatchError) -> JSONResponse:
    return dispatch_error_response(request, exc)


setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
