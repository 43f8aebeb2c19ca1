from .checkout_schemas import (
    CheckoutStart, CheckoutUpdate, ContactUpdate, VerifyCodeIn, PaymentConfirmIn,
    VerificationOut, PaymentOut, CheckoutOut, AuthCallbackIn, AuthCallbackOut
)
from .booking_schemas import TravelerOut, BookingOut, TourOut

__all__ = [
    # Checkout schemas
    "CheckoutStart",
    "CheckoutUpdate",
    "ContactUpdate",
    "VerifyCodeIn",
    "PaymentConfirmIn",
    "VerificationOut",
    "PaymentOut",
    "CheckoutOut",
    "AuthCallbackIn",
    "AuthCallbackOut",

    # Booking schemas
    "TravelerOut",
    "BookingOut",
    "TourOut",
]
