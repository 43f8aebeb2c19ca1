from trekbook.domain import BookingDraft, DraftEnvelope, Drafting
from trekbook.services import DraftService
from trekbook.infrastructure.draft_store import DRAFT_KEY

from conftest import EVEREST


def _envelope() -> DraftEnvelope:
    return DraftEnvelope(draft=BookingDraft(tour=EVEREST, traveler_count=3), state=Drafting())


async def test_save_twice_loads_same_as_once(store):
    drafts = DraftService(store, "client-1")
    envelope = _envelope()

    assert await drafts.save(envelope)
    once = await drafts.load()
    assert await drafts.save(envelope)
    twice = await drafts.load()

    assert once.draft == twice.draft
    assert once.state == twice.state
    assert once.revision == twice.revision
    assert once.checkout_id == twice.checkout_id == envelope.checkout_id


def test_each_envelope_gets_its_own_checkout_id():
    assert _envelope().checkout_id != _envelope().checkout_id


async def test_load_without_draft_returns_none(store):
    assert await DraftService(store, "nobody").load() is None


async def test_slots_are_per_client(store):
    await DraftService(store, "client-1").save(_envelope())

    assert await DraftService(store, "client-2").load() is None


async def test_write_failure_is_not_fatal(store, redis_client):
    drafts = DraftService(store, "client-1")
    redis_client.fail = True

    assert await drafts.save(_envelope()) is False
    assert await drafts.load() is None
    await drafts.clear()


async def test_corrupt_slot_loads_as_no_draft(store, redis_client):
    redis_client.data[DRAFT_KEY.format(client_id="client-1")] = "{not json"

    assert await DraftService(store, "client-1").load() is None


async def test_clear_removes_draft(store):
    drafts = DraftService(store, "client-1")
    await drafts.save(_envelope())

    await drafts.clear()

    assert await drafts.load() is None


async def test_claim_is_granted_once(store):
    first = DraftService(store, "client-1")
    second = DraftService(store, "client-1")

    assert await first.try_claim("verified:jane@example.com:4")
    assert not await second.try_claim("verified:jane@example.com:4")
    assert await second.try_claim("verified:jane@example.com:5")


async def test_claim_without_storage_lets_caller_proceed(store, redis_client):
    redis_client.fail = True

    assert await DraftService(store, "client-1").try_claim("anything")
