"""Classify an email against the profiles known to the identity provider.

Only used for UX guidance and for the submit-time duplicate check; it is never
an authorization decision.
"""

from __future__ import annotations

import logging

from trekbook.core import ExternalServiceError
from trekbook.domain import IdentityClass
from trekbook.infrastructure.identity import IIdentityProvider

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_name(name: str) -> str:
    return " ".join((name or "").split()).lower()


class IdentityService:
    def __init__(self, provider: IIdentityProvider):
        self.provider = provider

    async def classify(self, email: str, provided_name: str = "") -> IdentityClass:
        """NEW, EXISTING_MATCH or EXISTING_MISMATCH for *email* / *provided_name*.

        A missing name is optimistically a match; callers re-check at
        submission once the full name is known. Lookup failures classify as
        NEW rather than blocking the user.
        """
        try:
            profile = await self.provider.lookup_profile_by_email(normalize_email(email))
        except ExternalServiceError as exc:
            logger.warning("Profile lookup failed for %s, treating as new: %s", email, exc.reason)
            return IdentityClass.new

        if profile is None:
            return IdentityClass.new

        stored = normalize_name(profile.full_name or "")
        provided = normalize_name(provided_name)
        if not provided or not stored or stored == provided:
            return IdentityClass.existing_match
        return IdentityClass.existing_mismatch
