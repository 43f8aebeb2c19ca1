"""Identity provider client (Supabase Auth + the ``profiles`` table)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from trekbook.core import ExternalServiceError
from trekbook.domain import AuthenticatedUser, Profile

logger = logging.getLogger(__name__)

SERVICE = "identity"


class IIdentityProvider(ABC):
    """Identity provider interface"""

    @abstractmethod
    async def issue_one_time_credential(
        self, email: str, metadata: Dict[str, Any], redirect_to: Optional[str] = None
    ) -> None:
        """Email a one-time code and/or magic link to *email*"""

    @abstractmethod
    async def verify_credential(self, email: str, code: str) -> AuthenticatedUser:
        """Exchange a one-time code for an authenticated user"""

    @abstractmethod
    async def get_user(self, access_token: str) -> AuthenticatedUser:
        """Resolve the user behind a session token (magic-link return)"""

    @abstractmethod
    async def lookup_profile_by_email(self, email: str) -> Optional[Profile]:
        """Get the profile registered for *email*, if any"""

    @abstractmethod
    async def upsert_profile(self, user: AuthenticatedUser, fields: Dict[str, Any]) -> None:
        """Write the user's display fields to their profile"""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class SupabaseIdentityClient(IIdentityProvider):
    """Async client for Supabase GoTrue and PostgREST endpoints."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        service_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url or not anon_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required for SupabaseIdentityClient")
        self._base = base_url.rstrip("/")
        self._anon_key = anon_key
        # Profile reads/writes bypass row-level security when a service key is configured
        self._service_key = service_key or anon_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self, bearer: Optional[str] = None, *, service: bool = False) -> Dict[str, str]:
        key = self._service_key if service else self._anon_key
        return {
            "apikey": key,
            "Authorization": f"Bearer {bearer or key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base, timeout=self._timeout, transport=self._transport
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                raise ExternalServiceError(SERVICE, f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(SERVICE, _error_message(response), status=response.status_code)
        return response

    @staticmethod
    def _user_from(payload: Dict[str, Any], access_token: Optional[str] = None) -> AuthenticatedUser:
        user = payload.get("user") or payload
        if not user.get("id"):
            raise ExternalServiceError(SERVICE, "Provider response did not include a user")
        return AuthenticatedUser(
            id=str(user["id"]),
            email=(user.get("email") or "").lower(),
            access_token=access_token or payload.get("access_token"),
        )

    async def issue_one_time_credential(
        self, email: str, metadata: Dict[str, Any], redirect_to: Optional[str] = None
    ) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request(
            "POST",
            "/auth/v1/otp",
            params=params,
            headers=self._headers(),
            json={"email": email, "create_user": True, "data": metadata},
        )
        logger.info("One-time credential issued for %s", email)

    async def verify_credential(self, email: str, code: str) -> AuthenticatedUser:
        response = await self._request(
            "POST",
            "/auth/v1/verify",
            headers=self._headers(),
            json={"type": "email", "email": email, "token": code},
        )
        return self._user_from(response.json())

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        response = await self._request("GET", "/auth/v1/user", headers=self._headers(access_token))
        return self._user_from(response.json(), access_token=access_token)

    async def lookup_profile_by_email(self, email: str) -> Optional[Profile]:
        response = await self._request(
            "GET",
            "/rest/v1/profiles",
            headers=self._headers(service=True),
            params={"select": "id,email,full_name", "email": f"eq.{email}", "limit": "1"},
        )
        rows = response.json()
        if not rows:
            return None
        return Profile.model_validate(rows[0])

    async def upsert_profile(self, user: AuthenticatedUser, fields: Dict[str, Any]) -> None:
        if user.access_token:
            await self._request(
                "PUT", "/auth/v1/user", headers=self._headers(user.access_token), json={"data": fields}
            )
        headers = self._headers(service=True)
        headers["Prefer"] = "resolution=merge-duplicates"
        await self._request(
            "POST",
            "/rest/v1/profiles",
            headers=headers,
            json={
                "id": user.id,
                "email": user.email,
                "full_name": fields.get("full_name"),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
