from typing import Optional, List, Dict, Any, Sequence
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from trekbook.core import BaseRepository
from trekbook.models import Booking, BookingTraveler


class BookingRepository(BaseRepository[Booking]):
    """Booking repository implementation"""

    def __init__(self, session: AsyncSession):
        super().__init__(Booking, session)

    async def insert_booking(self, fields: Dict[str, Any]) -> Booking:
        return await self.create(obj_in=fields)

    async def insert_travelers(
        self,
        booking_id: int,
        travelers: Sequence[Dict[str, Any]]
    ) -> List[BookingTraveler]:
        """Insert traveler rows in the given order"""
        rows = []
        for position, traveler in enumerate(travelers):
            rows.append({**traveler, "booking_id": booking_id, "position": position})
        db_objs = [BookingTraveler(**row) for row in rows]
        self.session.add_all(db_objs)
        await self.session.flush()
        return db_objs

    async def get_by_payment_reference(self, payment_reference: str) -> Optional[Booking]:
        """Get the booking created for a captured payment, if any"""
        query = (
            select(Booking)
            .options(selectinload(Booking.travelers), selectinload(Booking.tour))
            .where(Booking.payment_reference == payment_reference)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_with_travelers(self, booking_id: int) -> Optional[Booking]:
        """Get booking with travelers and tour loaded"""
        query = (
            select(Booking)
            .options(selectinload(Booking.travelers), selectinload(Booking.tour))
            .where(Booking.id == booking_id)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

