import pytest

from trekbook.core import ExternalServiceError, VerificationError
from trekbook.domain import CredentialState, VerificationStatus
from trekbook.services import VerificationFlow

from conftest import EXPIRED_CODE, VALID_CODE


@pytest.fixture
def flow(provider, clock):
    return VerificationFlow(provider, code_length=8, min_code_length=6, cooldown_seconds=60, clock=clock)


async def test_issue_starts_cooldown(flow, provider, clock):
    attempt = await flow.issue(" Jane@Example.com ", {"full_name": "Jane Doe"})

    assert flow.status == VerificationStatus.pending
    assert attempt.email == "jane@example.com"
    assert attempt.code_length == 8
    assert flow.cooldown_remaining() == 60
    assert provider.issued == [("jane@example.com", {"full_name": "Jane Doe"}, None)]


async def test_resend_rejected_until_cooldown_reaches_zero(flow, provider, clock):
    await flow.issue("jane@example.com", {})

    clock.advance(59)
    assert flow.cooldown_remaining() == 1
    with pytest.raises(VerificationError) as exc_info:
        await flow.resend()
    assert exc_info.value.retry_after == 1

    clock.advance(1)
    assert flow.cooldown_remaining() == 0
    await flow.resend()

    assert len(provider.issued) == 2
    assert flow.cooldown_remaining() == 60


async def test_short_code_rejected_locally(flow, provider):
    await flow.issue("jane@example.com", {})

    with pytest.raises(VerificationError, match="full code"):
        await flow.verify("12345")

    assert provider.verified == []
    assert flow.status == VerificationStatus.pending


async def test_six_digit_code_is_forwarded(flow, provider):
    await flow.issue("jane@example.com", {})

    with pytest.raises(VerificationError):
        await flow.verify("123456")

    assert provider.verified == [("jane@example.com", "123456")]
    assert flow.status == VerificationStatus.pending


async def test_verify_success(flow):
    await flow.issue("jane@example.com", {})

    user = await flow.verify(f" {VALID_CODE} ")

    assert user.email == "jane@example.com"
    assert flow.status == VerificationStatus.verified
    assert flow.attempt.credential_state == CredentialState.consumed


async def test_expired_code_marks_attempt_expired(flow, provider):
    await flow.issue("jane@example.com", {})

    with pytest.raises(VerificationError, match="expired"):
        await flow.verify(EXPIRED_CODE)

    assert flow.status == VerificationStatus.expired
    assert flow.attempt.credential_state == CredentialState.expired


async def test_provider_throttling_message(flow, provider):
    provider.issue_error = ExternalServiceError("identity", "rate limit", status=429)

    with pytest.raises(VerificationError, match="Too many attempts"):
        await flow.issue("jane@example.com", {})

    assert flow.status == VerificationStatus.idle


async def test_ambient_sign_in_completes_matching_attempt(flow, provider):
    await flow.issue("jane@example.com", {})

    assert not flow.accept_ambient(provider.user_for("other@example.com"))
    assert flow.accept_ambient(provider.user_for("jane@example.com"))
    assert flow.status == VerificationStatus.verified


async def test_ambient_sign_in_ignored_after_cancel(flow, provider):
    await flow.issue("jane@example.com", {})
    flow.cancel()

    assert not flow.accept_ambient(provider.user_for("jane@example.com"))
    assert flow.status == VerificationStatus.cancelled


async def test_restore_does_not_carry_the_countdown(flow, provider, clock):
    attempt = await flow.issue("jane@example.com", {})

    reloaded = VerificationFlow(provider, cooldown_seconds=60, clock=clock)
    reloaded.restore(attempt)

    assert reloaded.status == VerificationStatus.pending
    assert reloaded.cooldown_remaining() == 0
