from .base import BaseRepository, IRepository, BaseService, IService
from .exceptions import (
    BaseError,
    NotFoundError,
    ValidationError,
    IdentityMismatchError,
    VerificationError,
    PaymentError,
    FinalizeError,
    CheckoutOrderError,
    ExternalServiceError
)
from .config import Settings, get_settings

__all__ = [
    # Base classes
    "BaseRepository",
    "IRepository",
    "BaseService",
    "IService",

    # Exceptions
    "BaseError",
    "NotFoundError",
    "ValidationError",
    "IdentityMismatchError",
    "VerificationError",
    "PaymentError",
    "FinalizeError",
    "CheckoutOrderError",
    "ExternalServiceError",

    # Configuration
    "Settings",
    "get_settings",
]
