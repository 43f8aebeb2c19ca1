"""Application entry point for the checkout service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy import select

# Rate limiting
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from trekbook.api.v1.api import api_v1_router
from trekbook.api.v1.middleware import (
    CheckoutClientMiddleware, base_error_handler, exception_handler, validation_exception_handler,
)
from trekbook.core import BaseError, Settings, get_settings
from trekbook.deps import CheckoutComponents, SessionDep, limiter
from trekbook.infrastructure import session_scope
from trekbook.infrastructure.draft_store import DraftStore
from trekbook.infrastructure.events import AuthEventBus, RedisAuthEventRelay
from trekbook.infrastructure.identity import SupabaseIdentityClient
from trekbook.infrastructure.payments import StripeGateway
from trekbook.infrastructure.redis_client import get_redis
from trekbook.services import BookingFinalizer, CheckoutRegistry

logger = logging.getLogger(__name__)


def build_components(settings: Settings) -> Tuple[CheckoutComponents, RedisAuthEventRelay]:
    """Production collaborators: Redis drafts, Supabase identity, Stripe payments"""
    client = get_redis()
    bus = AuthEventBus()
    relay = RedisAuthEventRelay(bus, client, settings.AUTH_EVENTS_CHANNEL)
    site_url = settings.SITE_URL.rstrip("/")
    components = CheckoutComponents(
        settings=settings,
        store=DraftStore(client, settings.DRAFT_TTL_SECONDS),
        identity_provider=SupabaseIdentityClient(
            settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY, settings.SUPABASE_SERVICE_KEY,
        ),
        gateway=StripeGateway(settings.STRIPE_SECRET_KEY, return_url=f"{site_url}/checkout/confirmation"),
        finalizer=BookingFinalizer(session_scope),
        bus=bus,
        publish=relay.publish,
    )
    return components, relay


def create_app(components: Optional[CheckoutComponents] = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        relay = None
        # Startup
        if getattr(app.state, "checkout", None) is None:
            built, relay = build_components(settings)
            app.state.checkout = built
            app.state.registry = CheckoutRegistry(built.machine_for, built.bus)
            relay.start()
            logger.info("Auth event relay listening on %s", settings.AUTH_EVENTS_CHANNEL)

        yield

        # Shutdown
        app.state.registry.close()
        if relay is not None:
            await relay.stop()
            await get_redis().aclose()

    app = FastAPI(
        title="Trekbook Checkout API",
        description="Checkout orchestration for trekking tour bookings",
        version="1.0.0",
        lifespan=lifespan
    )

    if components is not None:
        app.state.checkout = components
        app.state.registry = CheckoutRegistry(components.machine_for, components.bus)

    # Attach rate-limiter
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    # Rate limiting
    @app.exception_handler(RateLimitExceeded)
    async def ratelimit_handler(request, exc: RateLimitExceeded):
        return PlainTextResponse("Too many requests", status_code=429)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(CheckoutClientMiddleware, secure=settings.SITE_URL.startswith("https://"))

    # Exception handling
    app.add_exception_handler(BaseError, base_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.middleware("http")(exception_handler)

    # Include v1 API with all endpoints
    app.include_router(api_v1_router, prefix="/api/v1")

    # Health check
    @app.get("/healthz")
    async def healthz(sess: SessionDep):
        """Health check endpoint."""
        status = {"db": "ok", "redis": "ok"}

        try:
            await sess.scalar(select(1))
        except Exception:
            status["db"] = "error"

        try:
            await app.state.checkout.store.ping()
        except Exception:
            status["redis"] = "error"

        return status

    return app


app = create_app()
