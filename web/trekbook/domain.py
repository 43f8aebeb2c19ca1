"""Checkout domain types.

Everything that is persisted in a draft slot lives here as a pydantic model so
that one envelope can be written (and read back) as a single JSON document.
The checkout state is a tagged union keyed on ``step``: each state only
carries the payload that is valid in it.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class PaymentPlan(str, Enum):
    full = "full"
    partial = "partial"


class IdentityClass(str, Enum):
    """How an email relates to the profiles known to the identity provider."""

    new = "new"
    existing_match = "existing_match"
    existing_mismatch = "existing_mismatch"


class VerificationStatus(str, Enum):
    idle = "idle"
    issuing = "issuing"
    pending = "pending"
    verifying = "verifying"
    verified = "verified"
    expired = "expired"
    cancelled = "cancelled"


class CredentialState(str, Enum):
    pending = "pending"
    consumed = "consumed"
    expired = "expired"


class CheckoutStep(str, Enum):
    drafting = "drafting"
    submitting = "submitting"
    identity_blocked = "identity_blocked"
    verifying = "verifying"
    authorizing = "authorizing"
    confirming = "confirming"
    finalizing = "finalizing"
    done = "done"
    reconciliation_required = "reconciliation_required"


class BookingStatus(str, Enum):
    pending = "Pending"
    confirmed = "Confirmed"
    cancelled = "Cancelled"


class PaymentStatus(str, Enum):
    not_paid = "Not Paid"
    deposit_paid = "Deposit Paid"
    paid_in_full = "Paid in Full"
    refunded = "Refunded"


# ---------------------------------------------------------------------------
#  Catalog
# ---------------------------------------------------------------------------

class AddOn(BaseModel):
    id: str
    name: str
    price: Decimal
    description: str = ""


ADDONS: List[AddOn] = [
    AddOn(id="privateRoom", name="Private Room Upgrade", price=Decimal("350"),
          description="Guaranteed single occupancy room in Kathmandu and teahouses during the trek."),
    AddOn(id="porter", name="Extra Porter Weight (10kg)", price=Decimal("150"),
          description="Increase your luggage allowance. We'll carry one heavy item for you."),
    AddOn(id="helicopter", name="Helicopter Return", price=Decimal("900"),
          description="Skip the descent and fly back to Kathmandu with breathtaking aerial views."),
    AddOn(id="transfer", name="Private Luxury Transfer", price=Decimal("60"),
          description="Premium airport pickup and drop-off in a private vehicle."),
]

ADDON_PRICES: Dict[str, Decimal] = {addon.id: addon.price for addon in ADDONS}


def default_addons() -> Dict[str, bool]:
    return {"privateRoom": True, "transfer": True}


# ---------------------------------------------------------------------------
#  Draft
# ---------------------------------------------------------------------------

class TourSnapshot(BaseModel):
    """The tour as it was when the draft was started."""
    tour_id: int
    slug: str
    name: str
    price_per_traveler: Decimal
    duration_days: int


class TravelerStub(BaseModel):
    full_name: str = ""
    dob: Optional[date] = None
    gender: str = "Male"
    country: str = ""
    dietary: str = ""


class ContactDetails(BaseModel):
    """Lead traveler, who is also the payer and the identity being verified."""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    country: str = ""
    gender: str = "Male"
    dob: Optional[date] = None
    dietary: str = ""
    hear_about: str = ""


class PriceBreakdown(BaseModel):
    unit_price: Decimal
    base_price: Decimal
    fees: Decimal
    addons_total: Decimal
    discount: Decimal
    subtotal: Decimal
    tax: Decimal
    total_due: Decimal
    partial_amount: Decimal

    def amount_for(self, plan: PaymentPlan) -> Decimal:
        return self.partial_amount if plan == PaymentPlan.partial else self.total_due


class BookingDraft(BaseModel):
    tour: Optional[TourSnapshot] = None
    start_date: Optional[date] = None
    traveler_count: int = Field(default=2, ge=1)
    travelers: List[TravelerStub] = Field(default_factory=list)
    addons: Dict[str, bool] = Field(default_factory=default_addons)
    payment_plan: PaymentPlan = PaymentPlan.full
    contact: ContactDetails = Field(default_factory=ContactDetails)
    agree_terms: bool = False
    identity: Optional[IdentityClass] = None
    pricing: Optional[PriceBreakdown] = None

    def selected_addons(self) -> List[str]:
        return [addon_id for addon_id, selected in self.addons.items() if selected]


# ---------------------------------------------------------------------------
#  External handles
# ---------------------------------------------------------------------------

class AuthenticatedUser(BaseModel):
    id: str
    email: str
    # Session token is only kept in memory; it never reaches the draft slot
    access_token: Optional[str] = Field(default=None, exclude=True)


class Profile(BaseModel):
    id: Optional[str] = None
    email: str
    full_name: Optional[str] = None


class VerificationAttempt(BaseModel):
    email: str
    credential_state: CredentialState = CredentialState.pending
    issued_at: datetime
    cooldown_until: datetime
    code_length: int


class PaymentAuthorization(BaseModel):
    """Single-use gateway handle bound to the amount and currency it was created for."""
    reference: str
    client_secret: str
    amount: Decimal
    currency: str
    plan: PaymentPlan

    def matches(self, amount: Decimal, currency: str) -> bool:
        return self.amount == amount and self.currency.lower() == currency.lower()


class ConfirmedPayment(BaseModel):
    reference: str
    amount: Decimal
    currency: str
    plan: PaymentPlan


class PaymentOutcome(BaseModel):
    """Result of submitting an instrument: ``Confirmed`` or ``Failed(reason)``.

    ``pending`` marks a failure whose charge status is unknown: the intent may
    still have been captured, so it must not be retried as a fresh payment.
    """
    confirmed: bool
    pending: bool = False
    payment: Optional[ConfirmedPayment] = None
    reason: Optional[str] = None
    code: Optional[str] = None


# ---------------------------------------------------------------------------
#  Checkout states
# ---------------------------------------------------------------------------

class Drafting(BaseModel):
    step: Literal["drafting"] = "drafting"
    errors: Dict[str, str] = Field(default_factory=dict)
    open_date_picker: bool = False
    notice: Optional[str] = None


class Submitting(BaseModel):
    step: Literal["submitting"] = "submitting"


class IdentityBlocked(BaseModel):
    step: Literal["identity_blocked"] = "identity_blocked"
    email: str


class Verifying(BaseModel):
    step: Literal["verifying"] = "verifying"
    attempt: VerificationAttempt


class Authorizing(BaseModel):
    step: Literal["authorizing"] = "authorizing"
    user: AuthenticatedUser
    authorization: Optional[PaymentAuthorization] = None
    profile_synced: bool = False
    last_error: Optional[str] = None


class Confirming(BaseModel):
    step: Literal["confirming"] = "confirming"
    user: AuthenticatedUser
    authorization: PaymentAuthorization


class Finalizing(BaseModel):
    step: Literal["finalizing"] = "finalizing"
    user: AuthenticatedUser
    payment: ConfirmedPayment


class Done(BaseModel):
    step: Literal["done"] = "done"
    booking_id: int
    reference: str


class ReconciliationRequired(BaseModel):
    step: Literal["reconciliation_required"] = "reconciliation_required"
    user: AuthenticatedUser
    payment: ConfirmedPayment
    reason: str


CheckoutState = Annotated[
    Union[
        Drafting, Submitting, IdentityBlocked, Verifying, Authorizing,
        Confirming, Finalizing, Done, ReconciliationRequired,
    ],
    Field(discriminator="step"),
]


class DraftEnvelope(BaseModel):
    """The single record kept in a draft slot."""
    version: int = 1
    # One id per started checkout; claims and gateway idempotency keys are scoped to it
    checkout_id: str = Field(default_factory=lambda: uuid4().hex)
    revision: int = 0
    draft: BookingDraft
    state: CheckoutState = Field(default_factory=Drafting)
    saved_at: Optional[datetime] = None


class ConfirmationView(BaseModel):
    booking_id: int
    reference: str
    tour_name: str
    email: str
    name: str
    traveler_count: int
    pricing: PriceBreakdown
    addons: List[str]
    payment_status: PaymentStatus
    dates: str
