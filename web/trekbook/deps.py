from dataclasses import dataclass
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import Depends, Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from trekbook.core import Settings, get_settings
from trekbook.infrastructure import get_session
from trekbook.infrastructure.draft_store import DraftStore
from trekbook.infrastructure.events import AuthEventBus, AuthenticatedEvent
from trekbook.infrastructure.identity import IIdentityProvider
from trekbook.infrastructure.payments import IPaymentGateway
from trekbook.services import (
    BookingFinalizer, CheckoutMachine, CheckoutRegistry, DraftService, IdentityService,
    PaymentService, PricingRules, VerificationFlow,
)

# Type alias for dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]

limiter = Limiter(key_func=get_remote_address, default_limits=[get_settings().RATE_LIMIT_DEFAULT])

TAB_HEADER = "X-Checkout-Tab"


@dataclass
class CheckoutComponents:
    """External collaborators every checkout context is built from"""
    settings: Settings
    store: DraftStore
    identity_provider: IIdentityProvider
    gateway: IPaymentGateway
    finalizer: BookingFinalizer
    bus: AuthEventBus
    # Local bus by default; the Redis relay when several workers share drafts
    publish: Optional[Callable[[AuthenticatedEvent], Awaitable[None]]] = None

    async def publish_event(self, event: AuthenticatedEvent) -> None:
        await (self.publish or self.bus.publish)(event)

    def machine_for(self, client_id: str) -> CheckoutMachine:
        settings = self.settings
        return CheckoutMachine(
            drafts=DraftService(self.store, client_id, claim_ttl=settings.CLAIM_TTL_SECONDS),
            identity=IdentityService(self.identity_provider),
            profiles=self.identity_provider,
            verification=VerificationFlow(
                self.identity_provider,
                code_length=settings.OTP_LENGTH,
                min_code_length=settings.OTP_MIN_LENGTH,
                cooldown_seconds=settings.OTP_RESEND_COOLDOWN,
                redirect_to=f"{settings.SITE_URL.rstrip('/')}/checkout",
            ),
            payments=PaymentService(self.gateway),
            finalizer=self.finalizer,
            rules=PricingRules.from_settings(settings),
            currency=settings.STRIPE_CURRENCY,
        )


def get_components(request: Request) -> CheckoutComponents:
    return request.app.state.checkout


def get_registry(request: Request) -> CheckoutRegistry:
    return request.app.state.registry


def get_client_id(request: Request) -> str:
    """Browser profile id set by CheckoutClientMiddleware"""
    return request.state.client_id


async def get_checkout(
    request: Request,
    x_checkout_tab: Annotated[Optional[str], Header(alias=TAB_HEADER)] = None,
) -> CheckoutMachine:
    """Live checkout context for this browser tab"""
    registry = get_registry(request)
    return await registry.get(get_client_id(request), x_checkout_tab or "default")


ComponentsDep = Annotated[CheckoutComponents, Depends(get_components)]
CheckoutDep = Annotated[CheckoutMachine, Depends(get_checkout)]
ClientIdDep = Annotated[str, Depends(get_client_id)]
