from fastapi import APIRouter, Query, Request

from trekbook.api.v1.endpoints.helpers import checkout_view, tour_snapshot
from trekbook.api.v1.schemas.checkout_schemas import (
    CheckoutOut, CheckoutStart, CheckoutUpdate, PaymentConfirmIn, VerifyCodeIn,
)
from trekbook.core import NotFoundError, get_settings
from trekbook.deps import CheckoutDep, SessionDep, limiter
from trekbook.infrastructure.repositories import TourRepository


router = APIRouter()

VERIFICATION_LIMIT = get_settings().RATE_LIMIT_VERIFICATION


@router.post("", response_model=CheckoutOut)
async def start_checkout(payload: CheckoutStart, sess: SessionDep, machine: CheckoutDep):
    """Open checkout for a tour, resuming this profile's draft for it if any"""
    tour = await TourRepository(sess).get_active(payload.tour_id)
    if not tour:
        raise NotFoundError("Tour", payload.tour_id)
    await machine.start(tour_snapshot(tour))
    return checkout_view(machine)


@router.get("", response_model=CheckoutOut)
async def get_checkout(machine: CheckoutDep):
    """Current checkout state, including progress made in other tabs"""
    await machine.refresh()
    return checkout_view(machine)


@router.patch("", response_model=CheckoutOut)
async def edit_checkout(payload: CheckoutUpdate, machine: CheckoutDep):
    await machine.edit(payload.changes())
    return checkout_view(machine)


@router.post("/submit", response_model=CheckoutOut)
async def submit_checkout(machine: CheckoutDep):
    """Validate the draft, check the identity and send the verification code"""
    await machine.submit()
    return checkout_view(machine)


@router.post("/verification/verify", response_model=CheckoutOut)
@limiter.limit(VERIFICATION_LIMIT)
async def verify_code(request: Request, payload: VerifyCodeIn, machine: CheckoutDep):
    await machine.verify(payload.code)
    return checkout_view(machine)


@router.post("/verification/resend", response_model=CheckoutOut)
@limiter.limit(VERIFICATION_LIMIT)
async def resend_code(request: Request, machine: CheckoutDep):
    await machine.resend()
    return checkout_view(machine)


@router.post("/verification/cancel", response_model=CheckoutOut)
async def cancel_verification(machine: CheckoutDep):
    await machine.cancel_verification()
    return checkout_view(machine)


@router.post("/payment/authorize", response_model=CheckoutOut)
async def authorize_payment(machine: CheckoutDep):
    """Retry creating the payment authorization after a gateway failure"""
    await machine.authorize()
    return checkout_view(machine)


@router.post("/payment/confirm", response_model=CheckoutOut)
async def confirm_payment(payload: PaymentConfirmIn, machine: CheckoutDep):
    """Charge the authorized amount and finalize the booking"""
    await machine.confirm_payment(payload.model_dump(exclude_none=True))
    return checkout_view(machine)


@router.delete("", response_model=CheckoutOut)
async def abandon_checkout(
    machine: CheckoutDep,
    leave: bool = Query(False, description="Also discard the saved draft"),
):
    await machine.abandon(leave_checkout=leave)
    return checkout_view(machine)


@router.get("/confirmation", response_model=CheckoutOut)
async def get_confirmation(machine: CheckoutDep):
    """Confirmation of the last finalized booking of this browser profile"""
    if machine.confirmation is None:
        machine.confirmation = await machine.drafts.load_confirmation()
    if machine.confirmation is None:
        raise NotFoundError("Confirmation", machine.client_id)
    return checkout_view(machine)
