"""Draft persistence for one browser profile.

Storage is best effort: a failed write is logged and checkout carries on with
the in-memory state (a reload will then lose the draft), and an unreadable or
corrupt slot loads as "no draft".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from trekbook.domain import ConfirmationView, DraftEnvelope
from trekbook.infrastructure.draft_store import DraftStore

logger = logging.getLogger(__name__)


class DraftService:
    def __init__(self, store: DraftStore, client_id: str, claim_ttl: int = 300):
        self.store = store
        self.client_id = client_id
        self.claim_ttl = claim_ttl

    async def save(self, envelope: DraftEnvelope) -> bool:
        """Overwrite the slot with *envelope*; returns ``False`` if the write failed"""
        envelope.saved_at = datetime.now(timezone.utc)
        try:
            await self.store.write(self.client_id, envelope.model_dump_json())
        except RedisError as exc:
            logger.exception("Draft write failed for client %s: %s", self.client_id, exc)
            return False
        return True

    async def load(self) -> Optional[DraftEnvelope]:
        try:
            raw = await self.store.read(self.client_id)
        except RedisError as exc:
            logger.warning("Draft read failed for client %s: %s", self.client_id, exc)
            return None
        if not raw:
            return None
        try:
            return DraftEnvelope.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Discarding corrupt draft for client %s: %s", self.client_id, exc)
            return None

    async def clear(self) -> None:
        try:
            await self.store.delete(self.client_id)
        except RedisError as exc:
            logger.exception("Draft clear failed for client %s: %s", self.client_id, exc)

    async def try_claim(self, token: str) -> bool:
        """First caller per *token* across all contexts of this profile wins.

        Without storage there is nothing to coordinate with, so the caller wins.
        """
        try:
            return await self.store.claim(self.client_id, token, self.claim_ttl)
        except RedisError as exc:
            logger.warning("Claim %s could not be checked for client %s: %s", token, self.client_id, exc)
            return True

    async def save_confirmation(self, view: ConfirmationView) -> None:
        try:
            await self.store.write_confirmation(self.client_id, view.model_dump_json())
        except RedisError as exc:
            logger.exception("Confirmation write failed for client %s: %s", self.client_id, exc)

    async def load_confirmation(self) -> Optional[ConfirmationView]:
        try:
            raw = await self.store.read_confirmation(self.client_id)
        except RedisError as exc:
            logger.warning("Confirmation read failed for client %s: %s", self.client_id, exc)
            return None
        if not raw:
            return None
        try:
            return ConfirmationView.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Discarding corrupt confirmation for client %s: %s", self.client_id, exc)
            return None
