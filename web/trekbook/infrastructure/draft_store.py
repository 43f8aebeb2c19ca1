"""Redis slots backing checkout drafts.

Each browser profile (checkout client id) owns exactly one draft slot, shared
by all of its tabs. A slot holds one serialized envelope and is always written
whole with a single ``SET``, so a reader never observes half of a transition.
"""

from __future__ import annotations

from typing import Optional

from redis.asyncio import Redis

DRAFT_KEY = "checkout:draft:{client_id}"
CONFIRMATION_KEY = "checkout:confirmation:{client_id}"
CLAIM_KEY = "checkout:claim:{client_id}:{token}"


class DraftStore:
    """Thin key layout over Redis; errors propagate to the caller."""

    def __init__(self, client: Redis, ttl: int):
        self._redis = client
        self.ttl = ttl

    async def read(self, client_id: str) -> Optional[str]:
        return await self._redis.get(DRAFT_KEY.format(client_id=client_id))

    async def write(self, client_id: str, payload: str) -> None:
        await self._redis.set(DRAFT_KEY.format(client_id=client_id), payload, ex=self.ttl)

    async def delete(self, client_id: str) -> None:
        await self._redis.delete(DRAFT_KEY.format(client_id=client_id))

    async def read_confirmation(self, client_id: str) -> Optional[str]:
        return await self._redis.get(CONFIRMATION_KEY.format(client_id=client_id))

    async def write_confirmation(self, client_id: str, payload: str) -> None:
        await self._redis.set(CONFIRMATION_KEY.format(client_id=client_id), payload, ex=self.ttl)

    async def claim(self, client_id: str, token: str, ttl: int) -> bool:
        """``SET NX EX`` mutex: only the first caller for *token* gets ``True``.

        The claim is never released explicitly; it expires after *ttl* seconds,
        by which time the winning context has persisted the transition.
        """
        ok = await self._redis.set(
            CLAIM_KEY.format(client_id=client_id, token=token), "1", ex=ttl, nx=True
        )
        return bool(ok)

    async def ping(self) -> bool:
        return await self._redis.ping()
