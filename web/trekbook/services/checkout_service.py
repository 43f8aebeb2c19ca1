"""Checkout orchestration.

DRAFTING -> SUBMITTING -> (IDENTITY_BLOCKED) | VERIFYING -> AUTHORIZING
  -> CONFIRMING -> FINALIZING -> DONE | RECONCILIATION_REQUIRED

A :class:`CheckoutMachine` is one live checkout context (a browser tab). Every
context of the same browser profile shares one draft slot; the slot holds the
whole envelope (draft plus state) and is overwritten once per transition, so a
reload always resumes from a consistent record. Contexts learn about each other
only through that slot, the claim keys next to it, and the auth event bus.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import phonenumbers
from pydantic import ValidationError as PydanticValidationError

from trekbook.core import (
    CheckoutOrderError, ExternalServiceError, FinalizeError, IdentityMismatchError,
    PaymentError, ValidationError, VerificationError,
)
from trekbook.domain import (
    ADDON_PRICES, ADDONS, AuthenticatedUser, Authorizing, BookingDraft, CheckoutState,
    ConfirmationView, ConfirmedPayment, Confirming, ContactDetails, DraftEnvelope, Done,
    Drafting, Finalizing, IdentityBlocked, IdentityClass, PaymentOutcome, ReconciliationRequired, Submitting,
    TourSnapshot, TravelerStub, Verifying,
)
from trekbook.infrastructure.events import AuthEventBus, AuthenticatedEvent
from trekbook.infrastructure.identity import IIdentityProvider
from trekbook.services.booking_service import BookingFinalizer, FinalizedBooking
from trekbook.services.draft_service import DraftService
from trekbook.services.identity_service import IdentityService, normalize_email
from trekbook.services.payment_service import PaymentService
from trekbook.services.pricing import PricingRules, price_draft
from trekbook.services.verification_service import VerificationFlow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")

EDITABLE_FIELDS = {
    "start_date", "traveler_count", "travelers", "addons",
    "payment_plan", "contact", "agree_terms",
}

# No user edits once the payment has been captured
LOCKED_STATES = (Confirming, Finalizing, Done, ReconciliationRequired)


def fit_travelers(draft: BookingDraft) -> BookingDraft:
    """Pad or trim the additional traveler stubs to ``traveler_count - 1``"""
    wanted = draft.traveler_count - 1
    travelers = list(draft.travelers[:wanted])
    travelers.extend(TravelerStub() for _ in range(wanted - len(travelers)))
    return draft.model_copy(update={"travelers": travelers})


def apply_changes(draft: BookingDraft, changes: Dict[str, Any]) -> BookingDraft:
    """New draft with *changes* merged in; contact and add-ons merge per key"""
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        field = sorted(unknown)[0]
        raise ValidationError(f"Field '{field}' cannot be edited", field=field)

    data = draft.model_dump()
    for key, value in changes.items():
        if key == "contact":
            data["contact"].update(value or {})
        elif key == "addons":
            data["addons"].update({k: bool(v) for k, v in (value or {}).items() if k in ADDON_PRICES})
        else:
            data[key] = value

    try:
        updated = BookingDraft.model_validate(data)
    except PydanticValidationError as exc:
        errors = {".".join(str(part) for part in err["loc"]): err["msg"] for err in exc.errors()}
        raise ValidationError("Please check the highlighted fields.", errors=errors) from exc
    return fit_travelers(updated)


def validate_draft(draft: BookingDraft) -> Dict[str, str]:
    """Field errors that block submission; empty when the draft can be submitted"""
    errors: Dict[str, str] = {}
    contact = draft.contact
    if draft.tour is None:
        errors["tour"] = "Please select a tour"
    if draft.start_date is None:
        errors["start_date"] = "Please select a trip date"
    if draft.traveler_count < 1:
        errors["traveler_count"] = "At least 1 traveler is required"
    if len(contact.full_name.strip()) < 2:
        errors["full_name"] = "Full name must be at least 2 characters"
    if not EMAIL_RE.match(contact.email.strip()):
        errors["email"] = "Please enter a valid email address"
    if contact.dob is None:
        errors["dob"] = "Date of birth is required"
    if not contact.country:
        errors["country"] = "Please select a country"
    if contact.phone.strip():
        region = contact.country.upper() if len(contact.country) == 2 else None
        try:
            parsed = phonenumbers.parse(contact.phone, region)
            if not phonenumbers.is_valid_number(parsed):
                errors["phone"] = "Please enter a valid phone number"
        except phonenumbers.NumberParseException:
            errors["phone"] = "Please enter a valid phone number, including the country code"
    if not draft.agree_terms:
        errors["agree_terms"] = "You must agree to the Terms and Conditions"
    return errors


def profile_fields(contact: ContactDetails) -> Dict[str, Any]:
    return {
        "full_name": contact.full_name.strip(),
        "phone": contact.phone,
        "country": contact.country,
        "gender": contact.gender,
        "dob": contact.dob.isoformat() if contact.dob else None,
        "hear_about": contact.hear_about,
    }


def confirmation_view(draft: BookingDraft, booking: FinalizedBooking) -> ConfirmationView:
    names = {addon.id: addon.name for addon in ADDONS}
    return ConfirmationView(
        booking_id=booking.id,
        reference=booking.reference,
        tour_name=draft.tour.name if draft.tour else "",
        email=draft.contact.email,
        name=draft.contact.full_name.strip(),
        traveler_count=draft.traveler_count,
        pricing=draft.pricing,
        addons=[names.get(addon_id, addon_id) for addon_id in draft.selected_addons()],
        payment_status=booking.payment_status,
        dates=booking.dates,
    )


class CheckoutMachine:
    """One live checkout context bound to a browser profile's draft slot."""

    def __init__(
        self,
        *,
        drafts: DraftService,
        identity: IdentityService,
        profiles: IIdentityProvider,
        verification: VerificationFlow,
        payments: PaymentService,
        finalizer: BookingFinalizer,
        rules: PricingRules = PricingRules(),
        currency: str = "usd",
    ) -> None:
        self.drafts = drafts
        self.identity = identity
        self.profiles = profiles
        self.verification = verification
        self.payments = payments
        self.finalizer = finalizer
        self.rules = rules
        self.currency = currency.lower()
        self.envelope: Optional[DraftEnvelope] = None
        self.confirmation: Optional[ConfirmationView] = None
        # Authenticated session of this context; keeps the access token the slot never stores
        self.user: Optional[AuthenticatedUser] = None
        self._lock = asyncio.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    #  Introspection
    # ------------------------------------------------------------------

    @property
    def client_id(self) -> str:
        return self.drafts.client_id

    @property
    def state(self) -> Optional[CheckoutState]:
        if self.envelope is not None:
            return self.envelope.state
        if self.confirmation is not None:
            return Done(booking_id=self.confirmation.booking_id, reference=self.confirmation.reference)
        return None

    @property
    def draft(self) -> Optional[BookingDraft]:
        return self.envelope.draft if self.envelope else None

    def attach(self, bus: AuthEventBus) -> None:
        """Listen for ambient authentication signals"""
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe(self.on_authenticated)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    #  Persistence helpers
    # ------------------------------------------------------------------

    async def _transition(self, state: CheckoutState) -> CheckoutState:
        """Move to *state* and write the whole envelope once"""
        self.envelope.state = state
        self.envelope.revision += 1
        await self.drafts.save(self.envelope)
        logger.debug("Checkout %s -> %s (rev %s)", self.client_id, state.step, self.envelope.revision)
        return state

    async def _refresh(self) -> None:
        """Adopt a newer envelope written by another context of this profile"""
        stored = await self.drafts.load()
        if stored is None:
            return
        if self.envelope is not None and stored.revision <= self.envelope.revision:
            return
        self._adopt(stored)

    async def refresh(self) -> Optional[CheckoutState]:
        """Catch up with transitions made by other contexts of this profile"""
        async with self._lock:
            await self._refresh()
            return self.state

    def _adopt(self, envelope: DraftEnvelope) -> None:
        self.envelope = envelope
        state = envelope.state
        if not isinstance(state, Verifying) and self.verification.in_flight:
            self.verification.cancel()
        if isinstance(state, Verifying):
            if self.verification.attempt is None or self.verification.attempt.email != state.attempt.email:
                self.verification.restore(state.attempt)
        elif isinstance(state, (Authorizing, Confirming, Finalizing, ReconciliationRequired)):
            if self.user is None or self.user.id != state.user.id:
                self.user = state.user

    def _require(self, *allowed: type) -> CheckoutState:
        state = self.state
        if not isinstance(state, allowed):
            step = state.step if state is not None else "none"
            raise CheckoutOrderError(f"This step is not available while checkout is '{step}'", state=step)
        return state

    def _reprice(self) -> None:
        self.envelope.draft.pricing = price_draft(self.envelope.draft, self.rules)

    def _amount(self):
        draft = self.envelope.draft
        return draft.pricing.amount_for(draft.payment_plan)

    # ------------------------------------------------------------------
    #  Mount / start
    # ------------------------------------------------------------------

    async def resume(self) -> Optional[CheckoutState]:
        """Pick up whatever this profile left in its draft slot"""
        async with self._lock:
            stored = await self.drafts.load()
            if stored is None:
                if self.envelope is None:
                    self.confirmation = await self.drafts.load_confirmation()
                return self.state
            self._adopt(stored)
            await self._resume_state()
            return self.state

    async def _resume_state(self) -> None:
        try:
            await self._resume_step(self.envelope.state)
        except PaymentError as exc:
            logger.warning("Checkout %s resumed with an unsettled payment: %s", self.client_id, exc.message)
        except FinalizeError as exc:
            logger.error("Checkout %s still needs reconciliation for %s", self.client_id, exc.payment_reference)

    async def _resume_step(self, state: CheckoutState) -> None:
        if isinstance(state, Submitting):
            # Interrupted before the identity check finished
            await self._transition(Drafting())
        elif isinstance(state, Confirming):
            # The confirmation was interrupted; the intent itself tells whether it was charged
            await self._settle(state)
        elif isinstance(state, Authorizing):
            await self._ensure_authorization()
        elif isinstance(state, Finalizing):
            await self._finalize(state.user, state.payment)

    async def start(self, tour: TourSnapshot) -> CheckoutState:
        """Open checkout for *tour*, resuming a draft already started for it"""
        async with self._lock:
            stored = await self.drafts.load()
            same_tour = stored is not None and stored.draft.tour and stored.draft.tour.tour_id == tour.tour_id
            if same_tour or (stored is not None and isinstance(stored.state, LOCKED_STATES)):
                # A submitted payment is settled before another checkout can replace it
                self._adopt(stored)
                await self._resume_state()
                return self.state

            draft = fit_travelers(BookingDraft(tour=tour))
            self.envelope = DraftEnvelope(
                draft=draft, revision=stored.revision if stored else 0,
            )
            self.confirmation = None
            if self.verification.in_flight:
                self.verification.cancel()
            self._reprice()
            logger.info("Checkout started for client %s, tour %s", self.client_id, tour.tour_id)
            return await self._transition(Drafting())

    # ------------------------------------------------------------------
    #  Drafting
    # ------------------------------------------------------------------

    async def edit(self, changes: Dict[str, Any]) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            state = self.state
            if self.envelope is None:
                raise CheckoutOrderError("There is no checkout in progress")
            if isinstance(state, LOCKED_STATES):
                raise CheckoutOrderError(
                    "The booking can no longer be changed once payment has been submitted", state=state.step,
                )

            draft = apply_changes(self.envelope.draft, changes)
            old_email = normalize_email(self.envelope.draft.contact.email)
            new_email = normalize_email(draft.contact.email)
            email_changed = new_email != old_email
            if isinstance(state, Verifying) and email_changed:
                raise ValidationError(
                    "The email cannot be changed while verification is in progress. "
                    "Cancel the verification first.",
                    field="email",
                )

            previous_amount = self._amount() if self.envelope.draft.pricing else None
            self.envelope.draft = draft
            self._reprice()

            if email_changed:
                draft.identity = None
                if new_email and EMAIL_RE.match(new_email):
                    draft.identity = await self.identity.classify(new_email, draft.contact.full_name)

            if isinstance(state, Authorizing):
                if email_changed:
                    # A different payer has to verify again
                    self.user = None
                    return await self._transition(Drafting())
                if self._amount() != previous_amount:
                    await self._transition(Authorizing(user=state.user, profile_synced=True))
                    await self._ensure_authorization()
                    return self.state
                return await self._transition(state)

            if isinstance(state, Verifying):
                return await self._transition(state)

            edited = set(changes) | set((changes.get("contact") or {}).keys())
            errors = {k: v for k, v in getattr(state, "errors", {}).items() if k not in edited}
            return await self._transition(Drafting(errors=errors))

    async def submit(self) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            state = self._require(Drafting, IdentityBlocked, Verifying)
            if isinstance(state, Verifying):
                return state

            await self._transition(Submitting())
            draft = self.envelope.draft
            errors = validate_draft(draft)
            if errors:
                open_picker = "start_date" in errors
                await self._transition(Drafting(errors=errors, open_date_picker=open_picker))
                raise ValidationError(
                    "Please fill in all required fields.", errors=errors, open_date_picker=open_picker,
                )

            email = normalize_email(draft.contact.email)
            draft.contact.email = email
            classification = await self.identity.classify(email, draft.contact.full_name)
            draft.identity = classification
            if classification == IdentityClass.existing_mismatch:
                logger.info("Checkout %s blocked: %s is registered under another name", self.client_id, email)
                await self._transition(IdentityBlocked(email=email))
                raise IdentityMismatchError(email)

            if self.user is not None and normalize_email(self.user.email) == email:
                # Already signed in as this payer in this context
                await self._advance_verified(self.user)
                return self.state

            try:
                attempt = await self.verification.issue(email, {
                    **profile_fields(draft.contact),
                    "email": email,
                })
            except VerificationError as exc:
                await self._transition(Drafting(notice=exc.message))
                raise
            logger.info("Verification issued for checkout %s", self.client_id)
            return await self._transition(Verifying(attempt=attempt))

    # ------------------------------------------------------------------
    #  Verification
    # ------------------------------------------------------------------

    async def verify(self, code: str) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            state = self._require(Verifying, Authorizing)
            if isinstance(state, Authorizing):
                # Another context already completed the verification
                return state
            try:
                user = await self.verification.verify(code)
            except VerificationError:
                if self.verification.attempt is not None and self.verification.attempt != state.attempt:
                    await self._transition(Verifying(attempt=self.verification.attempt))
                raise
            await self._advance_verified(user)
            return self.state

    async def resend(self) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            self._require(Verifying)
            attempt = await self.verification.resend()
            return await self._transition(Verifying(attempt=attempt))

    async def cancel_verification(self) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            self._require(Verifying)
            self.verification.cancel()
            return await self._transition(Drafting(notice="Verification cancelled."))

    async def on_authenticated(self, event: AuthenticatedEvent) -> None:
        """Ambient signal: a sign-in completed somewhere for this profile.

        Re-checks the draft slot first, then only advances from a compatible
        state. Redundant signals fall through as no-ops.
        """
        if event.client_id is not None and event.client_id != self.client_id:
            return
        async with self._lock:
            await self._refresh()
            state = self.state
            if isinstance(state, Verifying):
                if not self.verification.accept_ambient(event.user):
                    return
                logger.info("Checkout %s verified through an ambient sign-in", self.client_id)
                await self._advance_verified(event.user)
            elif isinstance(state, Authorizing) and state.authorization is None:
                if normalize_email(event.user.email) == normalize_email(state.user.email):
                    self.user = event.user
                    await self._ensure_authorization()

    async def _advance_verified(self, user: AuthenticatedUser) -> None:
        envelope = self.envelope
        token = f"verified:{envelope.checkout_id}:{normalize_email(user.email)}:{envelope.revision}"
        if not await self.drafts.try_claim(token):
            # Another context of this profile is already driving the flow
            await self._refresh()
            return

        self.user = user
        await self._transition(Authorizing(user=user))
        await self._sync_profile(user)
        await self._ensure_authorization()

    async def _sync_profile(self, user: AuthenticatedUser) -> None:
        state = self.envelope.state
        draft = self.envelope.draft
        if not isinstance(state, Authorizing) or state.profile_synced:
            return
        if draft.identity != IdentityClass.existing_match:
            try:
                await self.profiles.upsert_profile(user, profile_fields(draft.contact))
            except ExternalServiceError as exc:
                logger.warning("Profile update failed for user %s: %s", user.id, exc.reason)
        await self._transition(state.model_copy(update={"profile_synced": True}))

    # ------------------------------------------------------------------
    #  Payment
    # ------------------------------------------------------------------

    async def _ensure_authorization(self) -> None:
        """Hold an authorization for exactly the current amount"""
        state = self.envelope.state
        if not isinstance(state, Authorizing):
            raise CheckoutOrderError("Payment cannot be authorized before verification", state=state.step)

        self._reprice()
        amount = self._amount()
        if self.payments.is_reusable(state.authorization, amount, self.currency):
            return

        scope = f"{self.envelope.checkout_id}-{self.envelope.revision}-{amount}"
        if not await self.drafts.try_claim(f"authorize:{scope}"):
            await self._refresh()
            return

        contact = self.envelope.draft.contact
        try:
            authorization = await self.payments.authorize(
                amount,
                self.currency,
                payer_email=contact.email,
                payer_name=contact.full_name.strip(),
                plan=self.envelope.draft.payment_plan,
                idempotency_key=f"checkout-{scope}",
            )
        except PaymentError as exc:
            await self._transition(state.model_copy(update={"authorization": None, "last_error": exc.message}))
            raise
        await self._transition(state.model_copy(update={"authorization": authorization, "last_error": None}))

    async def authorize(self) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            self._require(Authorizing)
            await self._ensure_authorization()
            return self.state

    async def confirm_payment(self, payment_details: Dict[str, Any]) -> CheckoutState:
        async with self._lock:
            await self._refresh()
            state = self._require(Authorizing, Confirming)
            if isinstance(state, Confirming):
                # An earlier confirmation never reported back; never submit the instrument twice
                await self._settle(state)
                return self.state

            await self._ensure_authorization()
            state = self.envelope.state
            if state.authorization is None:
                raise PaymentError("The payment is not ready yet. Please try again.", code="not_authorized")

            confirming = await self._transition(Confirming(user=state.user, authorization=state.authorization))
            outcome = await self.payments.confirm(state.authorization, payment_details)
            await self._apply_outcome(confirming, outcome)
            return self.state

    async def _settle(self, state: Confirming) -> None:
        outcome = await self.payments.recover(state.authorization)
        await self._apply_outcome(state, outcome)

    async def _apply_outcome(self, state: Confirming, outcome: PaymentOutcome) -> None:
        """Finalize a captured payment; otherwise go back to Authorizing or stay put while unknown"""
        if outcome.confirmed:
            user = self.user if self.user and self.user.id == state.user.id else state.user
            await self._finalize(user, outcome.payment)
            return

        if outcome.pending:
            logger.warning("Checkout %s waiting on payment %s", self.client_id, state.authorization.reference)
            raise PaymentError(outcome.reason, code=outcome.code)

        # A canceled intent cannot be confirmed again
        authorization = None if outcome.code == "canceled" else state.authorization
        await self._transition(Authorizing(
            user=state.user, authorization=authorization,
            profile_synced=True, last_error=outcome.reason,
        ))
        raise PaymentError(outcome.reason or "Your payment was declined.", code=outcome.code)

    async def _finalize(self, user: AuthenticatedUser, payment: ConfirmedPayment) -> None:
        await self._transition(Finalizing(user=user, payment=payment))
        draft = self.envelope.draft
        try:
            booking = await self.finalizer.finalize(user, draft, payment, self.drafts)
        except FinalizeError as exc:
            await self._transition(ReconciliationRequired(user=user, payment=payment, reason=exc.reason))
            raise

        self.confirmation = confirmation_view(draft, booking)
        await self.drafts.save_confirmation(self.confirmation)
        # The finalizer cleared the slot; Done lives only in memory and in the confirmation slot
        self.envelope = None
        self.verification.cancel()

    # ------------------------------------------------------------------
    #  Abandon
    # ------------------------------------------------------------------

    async def abandon(self, leave_checkout: bool = False) -> Optional[CheckoutState]:
        """Drop in-flight verification and authorization; keep the draft unless leaving"""
        async with self._lock:
            await self._refresh()
            state = self.state
            if isinstance(state, LOCKED_STATES):
                raise CheckoutOrderError("Checkout cannot be abandoned after payment", state=state.step)
            self.verification.cancel()
            if leave_checkout:
                await self.drafts.clear()
                self.envelope = None
                logger.info("Checkout abandoned by client %s", self.client_id)
                return None
            if self.envelope is None:
                return None
            return await self._transition(Drafting())


MachineFactory = Callable[[str], CheckoutMachine]


class CheckoutRegistry:
    """Live checkout contexts keyed by ``(client id, tab id)``.

    Every machine is subscribed to the auth bus while it is registered. The
    oldest contexts are dropped once ``max_sessions`` is reached; their state
    is still in the draft slot and comes back on the next request.
    """

    def __init__(self, factory: MachineFactory, bus: AuthEventBus, max_sessions: int = 1000):
        self._factory = factory
        self.bus = bus
        self.max_sessions = max_sessions
        self._machines: "OrderedDict[Tuple[str, str], CheckoutMachine]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._machines)

    async def get(self, client_id: str, tab_id: str) -> CheckoutMachine:
        key = (client_id, tab_id)
        machine = self._machines.get(key)
        if machine is not None:
            self._machines.move_to_end(key)
            return machine

        machine = self._factory(client_id)
        machine.attach(self.bus)
        self._machines[key] = machine
        while len(self._machines) > self.max_sessions:
            _, evicted = self._machines.popitem(last=False)
            evicted.detach()
        await machine.resume()
        return machine

    def close(self) -> None:
        for machine in self._machines.values():
            machine.detach()
        self._machines.clear()

