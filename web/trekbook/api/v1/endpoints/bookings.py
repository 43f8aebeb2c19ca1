from fastapi import APIRouter

from trekbook.api.v1.schemas.booking_schemas import BookingOut, TravelerOut
from trekbook.core import NotFoundError
from trekbook.deps import ClientIdDep, ComponentsDep, SessionDep
from trekbook.services import BookingService, DraftService


router = APIRouter()


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: int, sess: SessionDep, components: ComponentsDep, client_id: ClientIdDep):
    """Read a finalized booking back for the confirmation page.

    Only the browser profile that completed the checkout can read it.
    """
    confirmation = await DraftService(components.store, client_id).load_confirmation()
    if confirmation is None or confirmation.booking_id != booking_id:
        raise NotFoundError("Booking", booking_id)

    booking = await BookingService(sess).get_confirmation(booking_id)
    return BookingOut(
        id=booking.id,
        reference=booking.reference,
        tour_id=booking.tour_id,
        tour_name=booking.tour.name,
        start_date=booking.start_date,
        dates=booking.dates,
        total_price=booking.total_price,
        amount_paid=booking.amount_paid,
        currency=booking.currency,
        status=booking.status,
        payment_status=booking.payment_status,
        created_at=booking.created_at,
        travelers=[TravelerOut.model_validate(t) for t in booking.travelers],
    )
