"""Main FastAPI application for the billing service"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import LOCALHOST_ORIGIN_RE, Settings, get_settings
from ..exceptions import BillingError, StripeError
from ..logging import configure_logging
from ..version import __version__
from .responses import envelope
from .routes import router

logger = structlog.get_logger(__name__)

PROVIDER_ERROR_MESSAGE = "Payment provider request failed"


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        errors.append({"field": ".".join(location) or "body", "message": error.get("msg", "")})
    return errors


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = exc.status_code
        message = exc.message
        # Details are returned for client errors only
        data = (exc.details or None) if status_code < 500 else None
        if isinstance(exc, StripeError) and status_code >= 500:
            message = PROVIDER_ERROR_MESSAGE

        log = logger.error if status_code >= 500 else logger.warning
        log(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=status_code,
            error=exc.message,
        )
        return envelope(data=data, message=message, status_code=status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Keeps the Allow header on 405
        return envelope(
            message=str(exc.detail),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = _field_errors(exc)
        logger.warning("request_validation_failed", path=request.url.path, errors=errors)
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        return envelope(
            message=f"Invalid request: {summary}",
            data={"errors": errors},
            status_code=400,
        )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler"""
        configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
        logger.info(
            "billing_service_starting",
            version=__version__,
            stripe_configured=settings.stripe_configured,
        )
        yield
        logger.info("billing_service_shutting_down")

    app = FastAPI(
        title="fluxos billing API",
        description="Checkout, subscription and dashboard endpoints backed by Stripe",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    origins = settings.allowed_origins_list
    if settings.FRONTEND_ORIGIN:
        origins.append(settings.FRONTEND_ORIGIN.rstrip("/"))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_origin_regex=LOCALHOST_ORIGIN_RE.pattern,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(router, prefix="/api", tags=["billing"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return envelope(
            data={
                "status": "healthy",
                "service": "fluxos-billing",
                "stripeConfigured": settings.stripe_configured,
            }
        )

    return app


app = create_app()
