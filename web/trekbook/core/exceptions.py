from typing import Any, Optional, Dict


class BaseError(Exception):
    """Base exception class for the application"""

    kind = "error"
    presentation = "inline"

    def __init__(
        self,
        message: str = "An error occurred",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(BaseError):
    """Exception raised when an entity is not found"""

    kind = "not_found"

    def __init__(self, entity: str, id: Any):
        super().__init__(
            message=f"{entity} with id {id} not found",
            status_code=404,
            details={"entity": entity, "id": id}
        )


class ValidationError(BaseError):
    """Field-scoped input error, recoverable by editing the draft"""

    kind = "validation"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
        open_date_picker: bool = False,
    ):
        details: Dict[str, Any] = {"field": field} if field else {}
        if errors:
            details["errors"] = errors
        if open_date_picker:
            details["open_date_picker"] = True
        super().__init__(
            message=message,
            status_code=400,
            details=details
        )
        self.errors = errors or ({field: message} if field else {})
        self.open_date_picker = open_date_picker


class IdentityMismatchError(BaseError):
    """The email belongs to a profile registered under a different name"""

    kind = "identity_mismatch"
    presentation = "modal"

    def __init__(self, email: str):
        super().__init__(
            message=(
                "This email is already registered under a different name. "
                "Use another email address or sign in to your account first."
            ),
            status_code=409,
            details={"email": email}
        )


class VerificationError(BaseError):
    """The identity provider rejected the credential, or a resend came too early"""

    kind = "verification"

    def __init__(self, message: str, retry_after: Optional[int] = None):
        details = {"retry_after": retry_after} if retry_after is not None else {}
        super().__init__(message=message, status_code=400, details=details)
        self.retry_after = retry_after


class PaymentError(BaseError):
    """Gateway decline, or a payment that could not be completed or confirmed"""

    kind = "payment"
    presentation = "modal"

    def __init__(self, message: str, code: Optional[str] = None):
        details = {"code": code} if code else {}
        super().__init__(message=message, status_code=402, details=details)
        self.code = code


class FinalizeError(BaseError):
    """Payment captured but the booking write failed"""

    kind = "finalize"
    presentation = "critical"

    def __init__(self, payment_reference: str, reason: str):
        super().__init__(
            message=(
                "Your payment was received but we could not confirm your reservation. "
                "Our team has been notified and will reconcile your booking. "
                "Please do not pay again."
            ),
            status_code=500,
            details={
                "payment_reference": payment_reference,
                "reason": reason,
                "requires_reconciliation": True,
            }
        )
        self.payment_reference = payment_reference
        self.reason = reason


class CheckoutOrderError(BaseError):
    """A step was requested out of order (e.g. authorize before verification)"""

    kind = "order"

    def __init__(self, message: str, state: Optional[str] = None):
        details = {"state": state} if state else {}
        super().__init__(message=message, status_code=409, details=details)


class ExternalServiceError(BaseError):
    """Exception raised when external service fails"""

    kind = "external"

    def __init__(self, service: str, message: str, status: Optional[int] = None):
        super().__init__(
            message=f"External service error: {message}",
            status_code=503,
            details={"service": service}
        )
        self.service = service
        self.reason = message
        self.status = status
