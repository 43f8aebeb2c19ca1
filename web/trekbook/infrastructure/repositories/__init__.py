from .tour_repository import TourRepository
from .customer_repository import CustomerRepository
from .booking_repository import BookingRepository

__all__ = [
    "TourRepository",
    "CustomerRepository",
    "BookingRepository",
]
