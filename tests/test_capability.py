"""Tests for signed single-purpose capability tokens."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import TimeoutError as RedisTimeoutError

from backoffice_auth.service.capability import CapabilityPurpose, CapabilityTokens
from backoffice_auth.service.errors import InvalidTokenError, ServiceUnavailableError


@pytest.fixture
def capabilities(settings, clock):
    return CapabilityTokens(settings, clock=clock.epoch)


async def test_payload_round_trips_with_owner(capabilities):
    token = capabilities.issue(CapabilityPurpose.STEP_UP, "user-1", {"method": "password"})
    payload = await capabilities.consume(token, CapabilityPurpose.STEP_UP, "user-1")
    assert payload == {"user_id": "user-1", "method": "password"}


async def test_replay_is_rejected(capabilities):
    token = capabilities.issue(CapabilityPurpose.PASSKEY_SIGN_IN, "user-1")
    await capabilities.consume(token, CapabilityPurpose.PASSKEY_SIGN_IN)
    with pytest.raises(InvalidTokenError):
        await capabilities.consume(token, CapabilityPurpose.PASSKEY_SIGN_IN)


async def test_purpose_is_bound(capabilities):
    token = capabilities.issue(CapabilityPurpose.PASSKEY_SIGN_IN, "user-1")
    with pytest.raises(InvalidTokenError):
        await capabilities.consume(token, CapabilityPurpose.STEP_UP)
    # A mismatched attempt does not burn the token
    await capabilities.consume(token, CapabilityPurpose.PASSKEY_SIGN_IN)


async def test_expiry(capabilities, clock):
    token = capabilities.issue(CapabilityPurpose.STEP_UP, "user-1")
    clock.advance(seconds=30)
    with pytest.raises(InvalidTokenError):
        await capabilities.consume(token, CapabilityPurpose.STEP_UP)


async def test_tokens_signed_with_another_secret_are_rejected(settings, capabilities, clock):
    rogue = CapabilityTokens(
        settings.model_copy(update={"signing_secret": "another-secret-entirely-0123456789abcdef"}),
        clock=clock.epoch,
    )
    token = rogue.issue(CapabilityPurpose.STEP_UP, "user-1")
    with pytest.raises(InvalidTokenError):
        await capabilities.consume(token, CapabilityPurpose.STEP_UP)


@pytest.mark.parametrize("garbage", ["", "abc", "a.b.c", "a.b.c.d"])
async def test_malformed_tokens_are_rejected(capabilities, garbage):
    with pytest.raises(InvalidTokenError):
        await capabilities.consume(garbage, CapabilityPurpose.STEP_UP)


async def test_consumed_marker_outage_fails_closed(settings, clock):
    cache = MagicMock()
    cache.mark_token_consumed = AsyncMock(side_effect=RedisTimeoutError("slow"))
    capabilities = CapabilityTokens(settings, cache, clock=clock.epoch)
    token = capabilities.issue(CapabilityPurpose.STEP_UP, "user-1")
    with pytest.raises(ServiceUnavailableError):
        await capabilities.consume(token, CapabilityPurpose.STEP_UP)
