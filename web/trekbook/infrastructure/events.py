"""Ambient "became authenticated" signal.

The identity provider can complete a sign-in outside of the checkout that asked
for it (a magic link opened in another tab). Whoever observes that completion
publishes an :class:`AuthenticatedEvent` here; every live checkout subscribed to
the bus gets a chance to advance.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from trekbook.domain import AuthenticatedUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedEvent:
    user: AuthenticatedUser
    # Browser profile the sign-in completed in, when known
    client_id: Optional[str] = None


AuthCallback = Callable[[AuthenticatedEvent], Awaitable[None]]


class AuthEventBus:
    """In-process observer list."""

    def __init__(self) -> None:
        self._subscribers: List[AuthCallback] = []

    def subscribe(self, callback: AuthCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: AuthenticatedEvent) -> None:
        # Subscribers run one after another so the first one can claim the transition
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as exc:
                logger.exception("Auth event subscriber failed for user %s: %s", event.user.id, exc)


class RedisAuthEventRelay:
    """Fans auth events out to every worker through a Redis pub/sub channel.

    Local publishes go to the channel only; the listener feeds every message,
    including our own, into the local bus so all workers see the same stream.
    A dropped Redis connection is retried with backoff for as long as the
    relay runs.
    """

    def __init__(self, bus: AuthEventBus, client: Redis, channel: str, backoff: float = 1.0):
        self.bus = bus
        self._redis = client
        self.channel = channel
        self.backoff = backoff
        self._task: Optional[asyncio.Task] = None

    async def publish(self, event: AuthenticatedEvent) -> None:
        message = json.dumps({
            "client_id": event.client_id,
            "user": event.user.model_dump(mode="json"),
        })
        await self._redis.publish(self.channel, message)

    async def _consume(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    event = AuthenticatedEvent(
                        user=AuthenticatedUser.model_validate(payload["user"]),
                        client_id=payload.get("client_id"),
                    )
                except (ValueError, KeyError) as exc:
                    logger.warning("Dropping malformed auth event: %s", exc)
                    continue
                await self.bus.publish(event)
        finally:
            await pubsub.aclose()

    @staticmethod
    def _log_reconnect(retry_state: RetryCallState) -> None:
        logger.warning(
            "Auth event relay lost Redis (%s); reconnecting, attempt %s",
            retry_state.outcome.exception(), retry_state.attempt_number,
        )

    async def _listen(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RedisError),
            wait=wait_exponential(multiplier=self.backoff, max=30),
            before_sleep=self._log_reconnect,
        ):
            with attempt:
                await self._consume()

    @staticmethod
    def _on_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Auth event relay stopped: %s", exc, exc_info=exc)
        else:
            logger.error("Auth event relay stopped: subscription ended")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._listen())
            self._task.add_done_callback(self._on_exit)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
