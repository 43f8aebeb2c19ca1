"""Payment orchestration against the gateway.

The orchestrator never writes bookings. A confirmed payment is handed back to
the checkout machine, which owns the finalize step.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from trekbook.core import ExternalServiceError, PaymentError
from trekbook.domain import (
    ConfirmedPayment, PaymentAuthorization, PaymentOutcome, PaymentPlan,
)
from trekbook.infrastructure.payments import IPaymentGateway

logger = logging.getLogger(__name__)

NOT_CHARGED = "The payment could not be processed. You have not been charged; please try again."
STATUS_UNKNOWN = (
    "We could not confirm whether your payment went through. "
    "Please do not pay again; we will check it when you come back to checkout."
)
# Intents whose capture may still complete
IN_FLIGHT_STATUSES = ("processing", "requires_capture")


class PaymentService:
    def __init__(self, gateway: IPaymentGateway):
        self.gateway = gateway

    @staticmethod
    def is_reusable(
        authorization: Optional[PaymentAuthorization], amount: Decimal, currency: str
    ) -> bool:
        """An authorization only stands for the exact amount and currency it was created for"""
        return authorization is not None and authorization.matches(amount, currency)

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        payer_email: str,
        payer_name: str,
        plan: PaymentPlan,
        idempotency_key: Optional[str] = None,
    ) -> PaymentAuthorization:
        """Create a gateway authorization sized to the selected plan"""
        if amount <= 0:
            raise PaymentError("Payment amount must be greater than zero.", code="invalid_amount")
        try:
            intent = await self.gateway.create_authorization(
                amount, currency, payer_email, payer_name, idempotency_key=idempotency_key
            )
        except ExternalServiceError as exc:
            logger.error("Payment authorization failed for %s: %s", payer_email, exc.reason)
            raise PaymentError(
                "We could not initialize the payment. Please try again.", code="authorization_failed"
            ) from exc

        return PaymentAuthorization(
            reference=intent.reference,
            client_secret=intent.client_secret,
            amount=amount,
            currency=currency.lower(),
            plan=plan,
        )

    async def confirm(
        self, authorization: PaymentAuthorization, payment_details: Dict[str, Any]
    ) -> PaymentOutcome:
        """Submit the instrument; returns Confirmed or Failed(reason), never raises for declines"""
        try:
            result = await self.gateway.confirm_authorization(authorization.client_secret, payment_details)
        except ExternalServiceError as exc:
            logger.error("Payment confirmation for %s failed: %s", authorization.reference, exc.reason)
            # The gateway may have captured the intent before the connection broke
            return await self.recover(authorization)

        if not result.succeeded:
            logger.info("Payment %s not confirmed: %s", authorization.reference, result.status)
            return PaymentOutcome(
                confirmed=False,
                reason=result.message or "Your payment was declined.",
                code=result.code or result.status,
            )
        return self._confirmed(authorization)

    async def recover(self, authorization: PaymentAuthorization) -> PaymentOutcome:
        """Outcome of a confirmation that never reported back, read from the intent itself.

        Only an intent the gateway reports as not captured is a "not charged"
        failure. When the gateway cannot be reached, or the intent is still
        processing, the outcome is ``pending``.
        """
        try:
            result = await self.gateway.retrieve_authorization(authorization.reference)
        except ExternalServiceError as exc:
            logger.error("Payment %s status unknown: %s", authorization.reference, exc.reason)
            return PaymentOutcome(confirmed=False, pending=True, reason=STATUS_UNKNOWN, code="payment_status_unknown")

        if result.succeeded:
            logger.warning("Payment %s was captured although its confirmation was lost", authorization.reference)
            return self._confirmed(authorization)
        if result.status in IN_FLIGHT_STATUSES:
            return PaymentOutcome(confirmed=False, pending=True, reason=STATUS_UNKNOWN, code=result.status)

        logger.info("Payment %s was not captured (%s)", authorization.reference, result.status)
        return PaymentOutcome(confirmed=False, reason=NOT_CHARGED, code=result.status)

    @staticmethod
    def _confirmed(authorization: PaymentAuthorization) -> PaymentOutcome:
        return PaymentOutcome(
            confirmed=True,
            payment=ConfirmedPayment(
                reference=authorization.reference,
                amount=authorization.amount,
                currency=authorization.currency,
                plan=authorization.plan,
            ),
        )
