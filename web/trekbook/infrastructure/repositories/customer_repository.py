from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from trekbook.core import BaseRepository
from trekbook.models import Customer


class CustomerRepository(BaseRepository[Customer]):
    """Customer repository implementation"""

    def __init__(self, session: AsyncSession):
        super().__init__(Customer, session)

    async def get_by_email(self, email: str) -> Optional[Customer]:
        """Get customer by normalized email"""
        return await self.find_one_by(email=email.strip().lower())

    async def find_or_create(
        self,
        *,
        email: str,
        name: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Customer:
        """Return the customer registered under *email*, creating it if needed"""
        customer = await self.get_by_email(email)
        if customer:
            return customer
        return await self.create(obj_in={
            "email": email.strip().lower(),
            "name": name,
            "phone": phone or None,
            "address": address or None,
        })
