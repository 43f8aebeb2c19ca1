from typing import Optional, List, Dict, Any
from datetime import date
from decimal import Decimal
from pydantic import BaseModel, Field

from trekbook.domain import (
    BookingDraft, CheckoutState, ConfirmationView, PaymentPlan, TravelerStub,
)


class CheckoutStart(BaseModel):
    """Schema for opening checkout for a tour"""
    tour_id: int


class ContactUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[str] = None
    dob: Optional[date] = None
    dietary: Optional[str] = None
    hear_about: Optional[str] = None


class CheckoutUpdate(BaseModel):
    """Schema for draft edits; only the fields sent are changed"""
    start_date: Optional[date] = None
    traveler_count: Optional[int] = Field(None, ge=1, le=50)
    travelers: Optional[List[TravelerStub]] = None
    addons: Optional[Dict[str, bool]] = None
    payment_plan: Optional[PaymentPlan] = None
    contact: Optional[ContactUpdate] = None
    agree_terms: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        if "contact" in data:
            data["contact"] = self.contact.model_dump(exclude_unset=True)
        return data


class VerifyCodeIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class PaymentConfirmIn(BaseModel):
    """Payment instrument collected by the gateway's client-side element"""
    payment_method: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class VerificationOut(BaseModel):
    status: str
    email: Optional[str] = None
    code_length: Optional[int] = None
    cooldown_remaining: int = 0


class PaymentOut(BaseModel):
    client_secret: str
    amount: Decimal
    currency: str
    plan: PaymentPlan


class CheckoutOut(BaseModel):
    """Schema for the checkout snapshot rendered by the storefront"""
    step: Optional[str]
    revision: int = 0
    state: Optional[CheckoutState] = None
    draft: Optional[BookingDraft] = None
    verification: Optional[VerificationOut] = None
    payment: Optional[PaymentOut] = None
    confirmation: Optional[ConfirmationView] = None


class AuthCallbackIn(BaseModel):
    """Session handed back by the identity provider after a magic link"""
    access_token: str = Field(..., min_length=1)


class AuthCallbackOut(BaseModel):
    user_id: str
    email: str
    checkout: CheckoutOut
