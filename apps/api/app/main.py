from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmAiRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import request_span_hook, setup_otel


logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app.started", extra={"service": settings.app_name})
    yield
    logger.info("app.stopped", extra={"service": settings.app_name})


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    setup_otel(settings)

    application = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    # Last added runs first: correlation ids are bound before logging and rate limiting.
    application.add_middleware(CrmAiRateLimitMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    FastAPIInstrumentor().instrument_app(application, server_request_hook=request_span_hook)
    return application


app = create_app()
