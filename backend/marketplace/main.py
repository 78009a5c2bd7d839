import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from marketplace.logging_config import setup_logging
from marketplace.routers import admin, auth, bookings, payment, services
from marketplace.services.booking_lifecycle import BookingLifecycleManager
from marketplace.services.catalog import ListingCatalog
from marketplace.services.payment_gateway import BoundedPaymentGateway, MockPaymentGateway, PaymentGateway
from marketplace.services.rating_aggregator import RatingAggregator
from marketplace.services.store import MarketplaceStore, store_from_env

logger = logging.getLogger(__name__)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg', 'invalid value')}" if location else str(first.get("msg", "Invalid request"))


def create_app(
    store: Optional[MarketplaceStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    """Composition root: builds the store, gateway and services and owns their lifetime.

    Nothing is built at import time. Serve with
    ``uvicorn marketplace.main:create_app --factory --app-dir backend``.
    """
    setup_logging()
    store = store or store_from_env()
    store.init_db()
    gateway = gateway or BoundedPaymentGateway(MockPaymentGateway())
    aggregator = RatingAggregator(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Marketplace API starting (db=%s)", store.db_path)
        yield
        gateway.close()
        logger.info("Marketplace API stopped")

    app = FastAPI(title="Hyperlocal Marketplace API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.catalog = ListingCatalog(store)
    app.state.lifecycle = BookingLifecycleManager(store, gateway, aggregator)

    cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_envelope(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_envelope(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "message": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error_envelope(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    app.include_router(auth.router)
    app.include_router(services.router)
    app.include_router(bookings.router)
    app.include_router(payment.router)
    app.include_router(admin.router)

    @app.get("/")
    def root():
        return {"success": True, "message": "Hyperlocal Service Marketplace API"}

    @app.get("/health")
    def health():
        return {"success": True, "status": "ok"}

    return app
