"""Shared helpers for the checkout endpoints."""

from decimal import Decimal

from trekbook.api.v1.schemas.checkout_schemas import CheckoutOut, PaymentOut, VerificationOut
from trekbook.domain import Authorizing, Confirming, TourSnapshot, Verifying
from trekbook.models import Tour
from trekbook.services import CheckoutMachine


def tour_snapshot(tour: Tour) -> TourSnapshot:
    return TourSnapshot(
        tour_id=tour.id,
        slug=tour.slug,
        name=tour.name,
        price_per_traveler=Decimal(tour.price_per_traveler),
        duration_days=tour.duration_days,
    )


def checkout_view(machine: CheckoutMachine) -> CheckoutOut:
    """Snapshot of one checkout context as the storefront renders it"""
    state = machine.state
    verification = None
    payment = None

    if isinstance(state, Verifying):
        flow = machine.verification
        verification = VerificationOut(
            status=flow.status.value,
            email=state.attempt.email,
            code_length=state.attempt.code_length,
            cooldown_remaining=flow.cooldown_remaining(),
        )
    elif isinstance(state, (Authorizing, Confirming)) and state.authorization is not None:
        authorization = state.authorization
        payment = PaymentOut(
            client_secret=authorization.client_secret,
            amount=authorization.amount,
            currency=authorization.currency,
            plan=authorization.plan,
        )

    return CheckoutOut(
        step=state.step if state is not None else None,
        revision=machine.envelope.revision if machine.envelope else 0,
        state=state,
        draft=machine.draft,
        verification=verification,
        payment=payment,
        confirmation=machine.confirmation,
    )
