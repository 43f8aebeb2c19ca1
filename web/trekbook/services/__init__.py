from .pricing import PricingRules, calculate_price, price_draft
from .draft_service import DraftService
from .identity_service import IdentityService
from .verification_service import VerificationFlow
from .payment_service import PaymentService
from .booking_service import BookingService, BookingFinalizer
from .checkout_service import CheckoutMachine, CheckoutRegistry

__all__ = [
    "PricingRules",
    "calculate_price",
    "price_draft",
    "DraftService",
    "IdentityService",
    "VerificationFlow",
    "PaymentService",
    "BookingService",
    "BookingFinalizer",
    "CheckoutMachine",
    "CheckoutRegistry",
]
