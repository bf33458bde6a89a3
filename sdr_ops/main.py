from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from sdr_ops.api.routes import router as api_router
from sdr_ops.automation.api import error_response
from sdr_ops.automation.service import trigger_service
from sdr_ops.core.config import get_settings
from sdr_ops.core.context import RequestContextMiddleware
from sdr_ops.core.database import SessionLocal, get_db
from sdr_ops.core.events import InternalEvent, event_bus
from sdr_ops.events import EXPORT_TAGS_CHANGED
from sdr_ops.logging import configure_logging
from sdr_ops.middleware.correlation_id import CorrelationIdMiddleware
from sdr_ops.middleware.rate_limit import AutomationMutationRateLimitMiddleware
from sdr_ops.middleware.request_logging import RequestLoggingMiddleware
from sdr_ops.otel import SERVICE_NAME, server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_export_tags_changed(event: InternalEvent) -> None:
    envelope: dict[str, Any] = event.payload
    with _event_session_scope() as session:
        trigger_service.handle_tags_changed_event(session, envelope)


def register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(EXPORT_TAGS_CHANGED, _on_export_tags_changed)
    _subscriptions_registered = True


_http_error_codes = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = error_response(
        request,
        status_code=exc.status_code,
        code=_http_error_codes.get(exc.status_code, "http_error"),
        message=str(exc.detail),
        details=exc.detail,
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="validation_failed",
        message="Request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_subscriptions()
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(AutomationMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
app.add_exception_handler(RequestValidationError, _validation_exception_handler)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
