from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel

from trekbook.domain import AddOn


class TravelerOut(BaseModel):
    """Schema for traveler rows of a booking"""
    position: int
    name: str
    email: Optional[str]
    is_primary: bool
    dob: Optional[date]
    gender: Optional[str]
    country: Optional[str]
    dietary_requirements: Optional[str]

    model_config = {
        "from_attributes": True,
    }


class BookingOut(BaseModel):
    """Schema for booking responses"""
    id: int
    reference: str
    tour_id: int
    tour_name: str
    start_date: date
    dates: Optional[str]
    total_price: Decimal
    amount_paid: Decimal
    currency: str
    status: str
    payment_status: str
    created_at: datetime
    travelers: List[TravelerOut]


class TourOut(BaseModel):
    """Schema for the tour snapshot shown at checkout"""
    id: int
    slug: str
    name: str
    price_per_traveler: Decimal
    duration_days: int
    addons: List[AddOn]

    model_config = {
        "from_attributes": True,
    }
