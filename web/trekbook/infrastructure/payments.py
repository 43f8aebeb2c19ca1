"""Payment gateway client (Stripe PaymentIntents)."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from trekbook.core import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE = "payments"


@dataclass(frozen=True)
class GatewayIntent:
    reference: str
    client_secret: str


@dataclass(frozen=True)
class GatewayConfirmation:
    status: str
    reference: str
    message: Optional[str] = None
    code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class IPaymentGateway(ABC):
    """Payment gateway interface"""

    @abstractmethod
    async def create_authorization(
        self,
        amount: Decimal,
        currency: str,
        payer_email: str,
        payer_name: str,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        """Create a payment intent for exactly *amount* in *currency*"""

    @abstractmethod
    async def confirm_authorization(
        self, client_secret: str, instrument: Dict[str, Any]
    ) -> GatewayConfirmation:
        """Submit a payment instrument against an existing intent"""

    @abstractmethod
    async def retrieve_authorization(self, reference: str) -> GatewayConfirmation:
        """Current status of an intent, for confirmations whose outcome was lost"""


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def intent_id_from_secret(client_secret: str) -> str:
    # Client secrets look like "pi_123_secret_abc"
    return client_secret.split("_secret_")[0]


def _confirmation_from(intent: Any) -> GatewayConfirmation:
    message = None
    if intent.status != "succeeded":
        error = getattr(intent, "last_payment_error", None)
        message = getattr(error, "message", None) or f"Payment not completed ({intent.status})"
    return GatewayConfirmation(status=intent.status, reference=intent.id, message=message)


class StripeGateway(IPaymentGateway):
    """Stripe calls run in a worker thread so the event loop is never blocked."""

    def __init__(self, api_key: str, return_url: Optional[str] = None) -> None:
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY environment variable is required for StripeGateway")
        self._api_key = api_key
        self._return_url = return_url

    async def create_authorization(
        self,
        amount: Decimal,
        currency: str,
        payer_email: str,
        payer_name: str,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        params: Dict[str, Any] = {
            "api_key": self._api_key,
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "receipt_email": payer_email,
            "metadata": {"customer_name": payer_name},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
        except stripe.StripeError as exc:
            raise ExternalServiceError(SERVICE, exc.user_message or str(exc), status=exc.http_status) from exc

        logger.info("Payment intent %s created for %s %s", intent.id, amount, currency)
        return GatewayIntent(reference=intent.id, client_secret=intent.client_secret)

    async def confirm_authorization(
        self, client_secret: str, instrument: Dict[str, Any]
    ) -> GatewayConfirmation:
        intent_id = intent_id_from_secret(client_secret)
        params: Dict[str, Any] = {"api_key": self._api_key, **instrument}
        if self._return_url:
            params.setdefault("return_url", self._return_url)
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.confirm, intent_id, **params)
        except stripe.CardError as exc:
            return GatewayConfirmation(
                status="declined",
                reference=intent_id,
                message=exc.user_message or "Your card was declined.",
                code=exc.code,
            )
        except stripe.StripeError as exc:
            raise ExternalServiceError(SERVICE, exc.user_message or str(exc), status=exc.http_status) from exc

        return _confirmation_from(intent)

    async def retrieve_authorization(self, reference: str) -> GatewayConfirmation:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, reference, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise ExternalServiceError(SERVICE, exc.user_message or str(exc), status=exc.http_status) from exc

        logger.info("Payment intent %s is %s", intent.id, intent.status)
        return _confirmation_from(intent)
