"""Booking finalize and read-back."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from trekbook.core import BaseService, FinalizeError, NotFoundError
from trekbook.domain import (
    AuthenticatedUser, BookingDraft, BookingStatus, ConfirmedPayment, PaymentPlan, PaymentStatus,
)
from trekbook.infrastructure.repositories import BookingRepository, CustomerRepository
from trekbook.models import Booking
from trekbook.services.draft_service import DraftService

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


def payment_status_for(plan: PaymentPlan) -> PaymentStatus:
    return PaymentStatus.paid_in_full if plan == PaymentPlan.full else PaymentStatus.deposit_paid


def format_date_range(start: date, duration_days: int) -> str:
    """'Mar 3 - Mar 16, 2027' for a 14 day trip starting on Mar 3"""
    end = start + timedelta(days=max(duration_days, 1) - 1)
    return f"{start:%b} {start.day} - {end:%b} {end.day}, {end.year}"


def make_booking_reference(tour_slug: str) -> str:
    suffix = (tour_slug or "TRIP")[:3].upper()
    return f"NV-{str(int(time.time() * 1000))[-4:]}-{suffix}"


def traveler_rows(draft: BookingDraft) -> List[Dict[str, Any]]:
    """Lead traveler first, then the additional travelers in form order"""
    contact = draft.contact
    rows = [{
        "name": contact.full_name.strip(),
        "email": contact.email.strip().lower(),
        "phone": contact.phone or None,
        "is_primary": True,
        "dob": contact.dob,
        "gender": contact.gender,
        "country": contact.country,
        "dietary_requirements": contact.dietary or None,
    }]
    for position, traveler in enumerate(draft.travelers, start=2):
        rows.append({
            "name": traveler.full_name.strip() or f"Traveler {position}",
            "email": None,
            "phone": None,
            "is_primary": False,
            "dob": traveler.dob,
            "gender": traveler.gender,
            "country": traveler.country,
            "dietary_requirements": traveler.dietary or None,
        })
    return rows


@dataclass(frozen=True)
class FinalizedBooking:
    id: int
    reference: str
    payment_status: PaymentStatus
    dates: str
    total_price: Decimal
    traveler_count: int


class BookingService(BaseService):
    def __init__(self, session: AsyncSession):
        super().__init__(session)
        self.repository = BookingRepository(session)
        self.customers = CustomerRepository(session)

    async def create_booking(
        self,
        user: AuthenticatedUser,
        draft: BookingDraft,
        payment: ConfirmedPayment,
    ) -> Booking:
        """Write one booking and its travelers for a captured payment.

        A booking already recorded for the same payment reference is returned
        as is, so a retried finalize never inserts twice.
        """
        existing = await self.repository.get_by_payment_reference(payment.reference)
        if existing:
            logger.info("Booking %s already exists for payment %s", existing.id, payment.reference)
            return existing

        if draft.tour is None or draft.start_date is None or draft.pricing is None:
            raise ValueError("Draft is missing tour, date or pricing")

        contact = draft.contact
        customer = await self.customers.find_or_create(
            email=contact.email,
            name=contact.full_name.strip(),
            phone=contact.phone,
            address=contact.country,
        )

        booking = await self.repository.insert_booking({
            "reference": make_booking_reference(draft.tour.slug),
            "customer_id": customer.id,
            "user_id": user.id,
            "tour_id": draft.tour.tour_id,
            "start_date": draft.start_date,
            "dates": format_date_range(draft.start_date, draft.tour.duration_days),
            "total_price": draft.pricing.total_due,
            "amount_paid": payment.amount,
            "currency": payment.currency,
            "status": BookingStatus.confirmed.value,
            "payment_status": payment_status_for(payment.plan).value,
            "payment_reference": payment.reference,
        })
        await self.repository.insert_travelers(booking.id, traveler_rows(draft))
        return await self.repository.get_with_travelers(booking.id)

    async def get_confirmation(self, booking_id: int) -> Booking:
        """Read a finalized booking back for the confirmation view"""
        booking = await self.repository.get_with_travelers(booking_id)
        if not booking:
            raise NotFoundError("Booking", booking_id)
        return booking


class BookingFinalizer:
    """Turns a confirmed payment into exactly one booking, then clears the draft.

    Only call this after the gateway confirmed the payment. Write failures are
    retried a few times; if the booking still cannot be written the payment is
    already captured, so the failure surfaces as :class:`FinalizeError` and must
    never lead to charging again.
    """

    def __init__(self, session_scope: SessionScope, attempts: int = 3, backoff: float = 0.5):
        self._session_scope = session_scope
        self.attempts = attempts
        self.backoff = backoff

    async def _write(
        self, user: AuthenticatedUser, draft: BookingDraft, payment: ConfirmedPayment
    ) -> FinalizedBooking:
        async with self._session_scope() as session:
            booking = await BookingService(session).create_booking(user, draft, payment)
            return FinalizedBooking(
                id=booking.id,
                reference=booking.reference,
                payment_status=PaymentStatus(booking.payment_status),
                dates=booking.dates or "",
                total_price=Decimal(booking.total_price),
                traveler_count=len(booking.travelers),
            )

    async def finalize(
        self,
        user: AuthenticatedUser,
        draft: BookingDraft,
        payment: ConfirmedPayment,
        drafts: Optional[DraftService] = None,
    ) -> FinalizedBooking:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_exponential(multiplier=self.backoff, max=8),
                retry=retry_if_exception_type(SQLAlchemyError),
                reraise=True,
            ):
                with attempt:
                    booking = await self._write(user, draft, payment)
        except (SQLAlchemyError, ValueError) as exc:
            logger.critical(
                "Payment %s captured but booking write failed; manual reconciliation required: %s",
                payment.reference, exc,
            )
            raise FinalizeError(payment.reference, str(exc)) from exc

        logger.info("Booking %s (%s) finalized for payment %s", booking.id, booking.reference, payment.reference)
        if drafts is not None:
            await drafts.clear()
        return booking
