"""One-time credential verification.

States: IDLE -> ISSUING -> PENDING -> (VERIFYING -> VERIFIED) | EXPIRED | CANCELLED

The credential can be a code typed into this checkout or a magic link opened
anywhere else. The second path never calls :meth:`VerificationFlow.verify`;
it arrives as an ambient authentication and is accepted through
:meth:`VerificationFlow.accept_ambient`. There is no in-app expiry: a pending
attempt stays pending until it is used, cancelled, or the provider reports
the credential as expired.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from trekbook.core import ExternalServiceError, VerificationError
from trekbook.domain import AuthenticatedUser, CredentialState, VerificationAttempt, VerificationStatus
from trekbook.infrastructure.identity import IIdentityProvider
from trekbook.services.identity_service import normalize_email

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _provider_message(exc: ExternalServiceError, fallback: str) -> str:
    if exc.status == 429:
        return "Too many attempts. Please wait a moment before trying again."
    return exc.reason or fallback


class VerificationFlow:
    def __init__(
        self,
        provider: IIdentityProvider,
        *,
        code_length: int = 8,
        min_code_length: int = 6,
        cooldown_seconds: int = 60,
        redirect_to: Optional[str] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.provider = provider
        self.code_length = code_length
        self.min_code_length = min_code_length
        self.cooldown_seconds = cooldown_seconds
        self.redirect_to = redirect_to
        self._clock = clock
        self.status = VerificationStatus.idle
        self.attempt: Optional[VerificationAttempt] = None
        self.user: Optional[AuthenticatedUser] = None

    # ------------------------------------------------------------------
    #  Introspection
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> bool:
        return self.status in (
            VerificationStatus.issuing,
            VerificationStatus.pending,
            VerificationStatus.verifying,
            VerificationStatus.expired,
        )

    def cooldown_remaining(self) -> int:
        """Whole seconds until a resend is allowed (0 means allowed now)"""
        if self.attempt is None:
            return 0
        remaining = (self.attempt.cooldown_until - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def restore(self, attempt: VerificationAttempt) -> None:
        """Adopt an attempt persisted by an earlier page load.

        The resend countdown is not carried over; provider-side throttling
        still applies.
        """
        now = self._clock()
        self.attempt = attempt.model_copy(update={"cooldown_until": now})
        self.status = (
            VerificationStatus.expired
            if attempt.credential_state == CredentialState.expired
            else VerificationStatus.pending
        )
        self.user = None

    # ------------------------------------------------------------------
    #  Operations
    # ------------------------------------------------------------------

    async def issue(self, email: str, metadata: Dict[str, Any]) -> VerificationAttempt:
        """Send a code/link to *email* and start the resend cooldown"""
        email = normalize_email(email)
        if self.status == VerificationStatus.pending and self.attempt and self.attempt.email == email:
            return await self.resend()

        self.status = VerificationStatus.issuing
        self.user = None
        try:
            await self.provider.issue_one_time_credential(email, metadata, redirect_to=self.redirect_to)
        except ExternalServiceError as exc:
            self.status = VerificationStatus.idle
            self.attempt = None
            raise VerificationError(_provider_message(exc, "Failed to send verification code.")) from exc

        now = self._clock()
        self.attempt = VerificationAttempt(
            email=email,
            issued_at=now,
            cooldown_until=now + timedelta(seconds=self.cooldown_seconds),
            code_length=self.code_length,
        )
        self.status = VerificationStatus.pending
        return self.attempt

    async def resend(self) -> VerificationAttempt:
        if self.attempt is None or self.status not in (VerificationStatus.pending, VerificationStatus.expired):
            raise VerificationError("There is no verification to resend.")
        remaining = self.cooldown_remaining()
        if remaining > 0:
            raise VerificationError(f"Please wait {remaining}s before requesting a new code.", retry_after=remaining)

        try:
            await self.provider.issue_one_time_credential(self.attempt.email, {}, redirect_to=self.redirect_to)
        except ExternalServiceError as exc:
            raise VerificationError(_provider_message(exc, "Failed to resend code.")) from exc

        now = self._clock()
        self.attempt = self.attempt.model_copy(update={
            "issued_at": now,
            "cooldown_until": now + timedelta(seconds=self.cooldown_seconds),
            "credential_state": CredentialState.pending,
        })
        self.status = VerificationStatus.pending
        logger.info("Verification code resent to %s", self.attempt.email)
        return self.attempt

    async def verify(self, code: str) -> AuthenticatedUser:
        if self.attempt is None or self.status not in (VerificationStatus.pending, VerificationStatus.expired):
            raise VerificationError("There is no verification in progress.")
        token = "".join((code or "").split())
        if len(token) < self.min_code_length:
            raise VerificationError("Please enter the full code.")
        if not token.isdigit():
            raise VerificationError("The code should only contain digits.")

        self.status = VerificationStatus.verifying
        try:
            user = await self.provider.verify_credential(self.attempt.email, token)
        except ExternalServiceError as exc:
            if exc.reason and "expired" in exc.reason.lower():
                self.status = VerificationStatus.expired
                self.attempt = self.attempt.model_copy(update={"credential_state": CredentialState.expired})
            else:
                self.status = VerificationStatus.pending
            raise VerificationError(_provider_message(exc, "Failed to verify code.")) from exc

        self._complete(user)
        return user

    def accept_ambient(self, user: AuthenticatedUser) -> bool:
        """Treat a sign-in completed elsewhere as a successful verify.

        Only an in-flight attempt for the same email is completed.
        """
        if not self.in_flight or self.attempt is None:
            return False
        if normalize_email(user.email) != self.attempt.email:
            return False
        self._complete(user)
        return True

    def cancel(self) -> None:
        """Stop waiting; an already issued credential stays valid with the provider"""
        if self.status == VerificationStatus.verified:
            return
        self.status = VerificationStatus.cancelled
        self.attempt = None

    def _complete(self, user: AuthenticatedUser) -> None:
        self.status = VerificationStatus.verified
        self.user = user
        if self.attempt is not None:
            self.attempt = self.attempt.model_copy(update={"credential_state": CredentialState.consumed})
