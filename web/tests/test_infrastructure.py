import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe
from redis.exceptions import ConnectionError as RedisConnectionError

from trekbook.core import ExternalServiceError
from trekbook.domain import AuthenticatedUser
from trekbook.infrastructure.events import AuthEventBus, AuthenticatedEvent, RedisAuthEventRelay
from trekbook.infrastructure.identity import SupabaseIdentityClient
from trekbook.infrastructure.payments import StripeGateway, to_minor_units

USER = AuthenticatedUser(id="user-1", email="jane@example.com", access_token="jwt-1")


def _supabase(handler):
    return SupabaseIdentityClient(
        "https://project.supabase.co/", "anon-key", "service-key", transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
#  Supabase identity client
# ---------------------------------------------------------------------------

async def test_issue_sends_profile_metadata_and_redirect():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={})

    await _supabase(handler).issue_one_time_credential(
        "jane@example.com", {"full_name": "Jane Doe"}, redirect_to="https://site/checkout",
    )

    request = requests[0]
    assert request.url.path == "/auth/v1/otp"
    assert request.url.params["redirect_to"] == "https://site/checkout"
    assert request.headers["apikey"] == "anon-key"
    body = json.loads(request.content)
    assert body["data"] == {"full_name": "Jane Doe"}
    assert body["create_user"] is True


async def test_verify_returns_user_with_session():
    def handler(request):
        return httpx.Response(200, json={
            "access_token": "jwt-1",
            "user": {"id": "user-1", "email": "Jane@Example.com"},
        })

    user = await _supabase(handler).verify_credential("jane@example.com", "12345678")

    assert user.id == "user-1"
    assert user.email == "jane@example.com"
    assert user.access_token == "jwt-1"


async def test_provider_error_message_is_kept():
    def handler(request):
        return httpx.Response(403, json={"msg": "Token has expired or is invalid"})

    with pytest.raises(ExternalServiceError) as exc_info:
        await _supabase(handler).verify_credential("jane@example.com", "00000000")

    assert exc_info.value.reason == "Token has expired or is invalid"
    assert exc_info.value.status == 403


async def test_network_failure_becomes_external_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalServiceError):
        await _supabase(handler).lookup_profile_by_email("jane@example.com")


async def test_profile_lookup_uses_service_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "user-1", "email": "jane@example.com", "full_name": "Jane Doe"}])

    profile = await _supabase(handler).lookup_profile_by_email("jane@example.com")

    assert profile.full_name == "Jane Doe"
    assert seen[0].headers["authorization"] == "Bearer service-key"
    assert seen[0].url.params["email"] == "eq.jane@example.com"


async def test_unknown_profile_is_none():
    profile = await _supabase(lambda request: httpx.Response(200, json=[])).lookup_profile_by_email("x@y.z")

    assert profile is None


async def test_upsert_writes_user_metadata_and_profile_row():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path, request.headers.get("prefer")))
        return httpx.Response(200, json={})

    await _supabase(handler).upsert_profile(USER, {"full_name": "Jane Doe"})

    assert paths == [
        ("PUT", "/auth/v1/user", None),
        ("POST", "/rest/v1/profiles", "resolution=merge-duplicates"),
    ]


def test_supabase_client_requires_configuration():
    with pytest.raises(RuntimeError):
        SupabaseIdentityClient("", "")


# ---------------------------------------------------------------------------
#  Stripe gateway
# ---------------------------------------------------------------------------

def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("2651.00")) == 265100
    assert to_minor_units(Decimal("795.305")) == 79531


async def test_create_authorization_passes_amount_and_idempotency_key(monkeypatch):
    calls = []

    def create(**params):
        calls.append(params)
        return SimpleNamespace(id="pi_1", client_secret="pi_1_secret_abc")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    intent = await StripeGateway("sk_test").create_authorization(
        Decimal("795.30"), "USD", "jane@example.com", "Jane Doe", idempotency_key="checkout-c-3-795.30",
    )

    assert intent.reference == "pi_1"
    assert calls[0]["amount"] == 79530
    assert calls[0]["currency"] == "usd"
    assert calls[0]["idempotency_key"] == "checkout-c-3-795.30"


async def test_card_decline_is_an_outcome_not_an_error(monkeypatch):
    def confirm(intent_id, **params):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)

    confirmation = await StripeGateway("sk_test").confirm_authorization("pi_1_secret_abc", {"payment_method": "pm"})

    assert not confirmation.succeeded
    assert confirmation.reference == "pi_1"
    assert confirmation.code == "card_declined"


async def test_confirm_uses_default_return_url(monkeypatch):
    calls = []

    def confirm(intent_id, **params):
        calls.append((intent_id, params))
        return SimpleNamespace(id=intent_id, status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)

    confirmation = await StripeGateway("sk_test", return_url="https://site/done").confirm_authorization(
        "pi_9_secret_xyz", {"payment_method": "pm_card_visa"},
    )

    assert confirmation.succeeded
    assert calls[0][0] == "pi_9"
    assert calls[0][1]["return_url"] == "https://site/done"


async def test_incomplete_intent_reports_status(monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "confirm",
        lambda intent_id, **params: SimpleNamespace(id=intent_id, status="requires_action", last_payment_error=None),
    )

    confirmation = await StripeGateway("sk_test").confirm_authorization("pi_1_secret_abc", {"payment_method": "pm"})

    assert confirmation.status == "requires_action"
    assert "requires_action" in confirmation.message


async def test_gateway_outage_is_external_error(monkeypatch):
    def create(**params):
        raise stripe.APIConnectionError("Network error")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    with pytest.raises(ExternalServiceError):
        await StripeGateway("sk_test").create_authorization(Decimal("10"), "usd", "a@b.c", "A B")


# ---------------------------------------------------------------------------
#  Auth events
# ---------------------------------------------------------------------------

async def test_failing_subscriber_does_not_stop_the_others():
    bus = AuthEventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        seen.append(event.user.id)

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(healthy)

    await bus.publish(AuthenticatedEvent(user=USER))
    unsubscribe()
    await bus.publish(AuthenticatedEvent(user=USER))

    assert seen == ["user-1"]
    assert bus.subscriber_count == 1


async def test_relay_publishes_without_session_token(redis_client):
    relay = RedisAuthEventRelay(AuthEventBus(), redis_client, "checkout:auth-events")

    await relay.publish(AuthenticatedEvent(user=USER, client_id="client-1"))

    channel, message = redis_client.published[0]
    payload = json.loads(message)
    assert channel == "checkout:auth-events"
    assert payload["client_id"] == "client-1"
    assert "access_token" not in payload["user"]


async def test_retrieve_reports_intent_status(monkeypatch):
    calls = []

    def retrieve(reference, **params):
        calls.append((reference, params))
        return SimpleNamespace(id=reference, status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)

    confirmation = await StripeGateway("sk_test").retrieve_authorization("pi_1")

    assert confirmation.succeeded
    assert calls == [("pi_1", {"api_key": "sk_test"})]


class ScriptedPubSub:
    """Pub/sub connection that drops immediately, or delivers messages and idles."""

    def __init__(self, messages=(), drop=False):
        self.messages = list(messages)
        self.drop = drop
        self.channels = []
        self.closed = False

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def listen(self):
        if self.drop:
            raise RedisConnectionError("Connection closed by server.")
        for message in self.messages:
            yield message
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def _auth_message(client_id="client-1"):
    return {
        "type": "message",
        "data": json.dumps({"client_id": client_id, "user": {"id": "user-1", "email": "jane@example.com"}}),
    }


async def test_relay_reconnects_after_redis_drops(redis_client):
    bus = AuthEventBus()
    received = asyncio.Event()
    seen = []

    async def on_event(event):
        seen.append(event)
        received.set()

    bus.subscribe(on_event)
    dropped = ScriptedPubSub(drop=True)
    healthy = ScriptedPubSub([{"type": "subscribe", "data": 1}, _auth_message()])
    connections = [dropped, healthy]
    redis_client.pubsub = lambda: connections.pop(0)
    relay = RedisAuthEventRelay(bus, redis_client, "checkout:auth-events", backoff=0)

    relay.start()
    await asyncio.wait_for(received.wait(), timeout=1)
    await relay.stop()

    assert seen[0].user.id == "user-1"
    assert seen[0].client_id == "client-1"
    assert dropped.closed and healthy.closed
    assert healthy.channels == ["checkout:auth-events"]


async def test_relay_exit_is_logged_and_stop_stays_quiet(redis_client, caplog):
    def broken():
        raise RuntimeError("pubsub unavailable")

    redis_client.pubsub = broken
    relay = RedisAuthEventRelay(AuthEventBus(), redis_client, "checkout:auth-events", backoff=0)

    relay.start()
    task = relay._task
    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert "Auth event relay stopped" in caplog.text
    await relay.stop()
