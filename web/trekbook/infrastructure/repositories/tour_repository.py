from typing import Optional, List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trekbook.core import BaseRepository
from trekbook.models import Tour


class TourRepository(BaseRepository[Tour]):
    """Read access to the tour catalog for checkout"""

    def __init__(self, session: AsyncSession):
        super().__init__(Tour, session)

    async def get_active(self, tour_id: int) -> Optional[Tour]:
        """Get a tour that can currently be booked"""
        query = select(Tour).where(Tour.id == tour_id, Tour.active.is_(True))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_active(self, *, skip: int = 0, limit: int = 100) -> List[Tour]:
        query = (
            select(Tour)
            .where(Tour.active.is_(True))
            .order_by(Tour.name)
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())
