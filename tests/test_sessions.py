"""Tests for the session registry: expiry, revocation, listing and notices."""

from datetime import timedelta

import httpx
import pytest

from backoffice_auth.service.errors import SessionExpiredError
from backoffice_auth.service.geolocation import LOCAL_NETWORK, GeolocationClient
from backoffice_auth.service.policy import InvalidationTrigger, SecurityEvent
from backoffice_auth.service.sessions import SessionFilters
from backoffice_auth.storage.models import DeviceInfo
from conftest import CHROME_MAC, FIREFOX_WINDOWS, SAFARI_IPHONE, open_session


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


class TestCreate:
    def test_device_details_are_parsed(self, runtime, user, clock):
        session = open_session(runtime, user.id, CHROME_MAC)
        assert (session.device_type, session.browser, session.os) == ("desktop", "Chrome", "macOS")
        assert session.expires_at == clock.now + timedelta(days=30)
        assert session.absolute_expires_at == clock.now + timedelta(days=45)
        assert session.last_auth_at == clock.now

    def test_missing_user_agent_is_unknown(self, runtime, user):
        session = open_session(runtime, user.id, None)
        assert session.device_type == "unknown"
        assert session.browser == "Unknown"

    def test_tokens_are_unique(self, runtime, user):
        first = open_session(runtime, user.id)
        second = open_session(runtime, user.id)
        assert first.session_token != second.session_token


class TestExpiry:
    def test_activity_slides_expiry(self, runtime, sessions, user, clock):
        session = open_session(runtime, user.id)
        clock.advance(days=1)
        touched = sessions.resolve(session.session_token)
        assert touched.last_activity_at == clock.now
        assert touched.expires_at == clock.now + timedelta(days=30)

    def test_absolute_cap_is_never_extended(self, runtime, sessions, user, clock):
        session = open_session(runtime, user.id)
        for _ in range(2):
            clock.advance(days=20)
            touched = sessions.resolve(session.session_token)
        assert touched.expires_at == session.absolute_expires_at
        clock.advance(days=5)
        with pytest.raises(SessionExpiredError):
            sessions.resolve(session.session_token)

    def test_idle_session_expires(self, runtime, sessions, user, clock):
        session = open_session(runtime, user.id)
        clock.advance(days=30)
        assert not sessions.is_valid(sessions.get(session.id))
        assert sessions.touch(session.id) is None

    def test_unknown_token_is_rejected(self, sessions):
        with pytest.raises(SessionExpiredError):
            sessions.resolve("not-a-session")
        with pytest.raises(SessionExpiredError):
            sessions.resolve("")


class TestRevoke:
    def test_revocation_is_permanent(self, runtime, sessions, user, clock):
        session = open_session(runtime, user.id)
        assert sessions.revoke(session.id) is True
        assert sessions.touch(session.id) is None
        clock.advance(minutes=1)
        with pytest.raises(SessionExpiredError):
            sessions.resolve(session.session_token)

    def test_second_revoke_is_a_no_op(self, runtime, sessions, user, audit):
        session = open_session(runtime, user.id)
        assert sessions.revoke(session.id) is True
        assert sessions.revoke(session.id) is False
        revoked_events = [
            c for c in audit.record.call_args_list if c.args[0] == SecurityEvent.SESSION_REVOKED
        ]
        assert len(revoked_events) == 1

    def test_revoke_all_except_keeps_current(self, runtime, sessions, user):
        current = open_session(runtime, user.id)
        others = [open_session(runtime, user.id, FIREFOX_WINDOWS) for _ in range(2)]
        assert sessions.revoke_all_except(user.id, current.id) == 2
        assert sessions.is_valid(sessions.get(current.id))
        assert not any(sessions.is_valid(sessions.get(s.id)) for s in others)

    def test_other_users_are_untouched(self, runtime, sessions, user, store):
        other = store.create_user("bob@example.com")
        theirs = open_session(runtime, other.id)
        open_session(runtime, user.id)
        sessions.revoke_all(user.id)
        assert sessions.is_valid(sessions.get(theirs.id))


class TestInvalidation:
    def test_password_change_keeps_current_session(self, runtime, sessions, user):
        current = open_session(runtime, user.id)
        other = open_session(runtime, user.id, SAFARI_IPHONE)
        count = sessions.apply_invalidation(
            InvalidationTrigger.PASSWORD_CHANGE, user.id, current.id
        )
        assert count == 1
        assert sessions.is_valid(sessions.get(current.id))
        assert not sessions.is_valid(sessions.get(other.id))

    def test_password_reset_revokes_every_session(self, runtime, sessions, user, audit):
        current = open_session(runtime, user.id)
        open_session(runtime, user.id, SAFARI_IPHONE)
        count = sessions.apply_invalidation("password_reset", user.id, current.id)
        assert count == 2
        assert sessions.active_count(user.id) == 0
        audit.record.assert_any_call(
            SecurityEvent.SESSIONS_INVALIDATED,
            user_id=user.id,
            trigger="password_reset",
            rule="revoke_all",
            count=2,
        )

    def test_unknown_trigger_is_rejected(self, sessions, user):
        with pytest.raises(ValueError):
            sessions.apply_invalidation("profile_update", user.id)


class TestListing:
    @pytest.fixture
    def populated(self, runtime, user, clock):
        made = {}
        for name, agent in (
            ("chrome", CHROME_MAC),
            ("firefox", FIREFOX_WINDOWS),
            ("iphone", SAFARI_IPHONE),
        ):
            made[name] = open_session(runtime, user.id, agent)
            clock.advance(minutes=5)
        return made

    def test_recent_activity_first(self, sessions, user, populated):
        listed = sessions.list(user.id)
        assert [s.id for s in listed] == [
            populated["iphone"].id,
            populated["firefox"].id,
            populated["chrome"].id,
        ]

    def test_oldest_sort(self, sessions, user, populated):
        listed = sessions.list(user.id, SessionFilters(sort="oldest"))
        assert listed[0].id == populated["chrome"].id

    def test_unknown_sort_falls_back_to_recent(self, sessions, user, populated):
        filters = SessionFilters(sort="random")
        listed = sessions.list(user.id, filters)
        assert listed[0].id == populated["iphone"].id
        # The caller's filters are left as given
        assert filters.sort == "random"

    def test_filters(self, sessions, user, populated):
        mobile = sessions.list(user.id, SessionFilters(device_type="mobile"))
        assert [s.id for s in mobile] == [populated["iphone"].id]
        firefox = sessions.list(user.id, SessionFilters(search="FIREFOX"))
        assert [s.id for s in firefox] == [populated["firefox"].id]

    def test_revoked_sessions_are_hidden(self, sessions, user, populated):
        sessions.revoke(populated["chrome"].id)
        assert populated["chrome"].id not in {s.id for s in sessions.list(user.id)}

    def test_admin_listing_pages_across_users(self, runtime, sessions, store, populated):
        other = store.create_user("bob@example.com")
        open_session(runtime, other.id)
        page, total = sessions.list_all_active(page=1, page_size=3)
        assert total == 4
        assert len(page) == 3
        second, _ = sessions.list_all_active(page=2, page_size=3)
        assert len(second) == 1


class TestNewLoginNotice:
    async def test_first_sign_in_from_device_sends_notice(self, sessions, user, notifier):
        await sessions.create(user.id, DeviceInfo(user_agent=CHROME_MAC, ip_address="203.0.113.7"))
        notifier.send_new_login.assert_called_once_with(
            user.email, "Chrome on macOS", "Unknown location", "203.0.113.7"
        )

    async def test_known_device_is_not_announced(self, sessions, user, notifier):
        device = DeviceInfo(user_agent=CHROME_MAC, ip_address="203.0.113.7")
        await sessions.create(user.id, device)
        await sessions.create(user.id, device)
        assert notifier.send_new_login.call_count == 1

    async def test_notifier_failure_does_not_block_sign_in(self, sessions, user, notifier):
        notifier.send_new_login.side_effect = RuntimeError("smtp down")
        session = await sessions.create(user.id, DeviceInfo(user_agent=FIREFOX_WINDOWS))
        assert sessions.is_valid(sessions.get(session.id))

    async def test_notices_are_throttled(self, sessions, user, notifier):
        for agent in (CHROME_MAC, FIREFOX_WINDOWS, SAFARI_IPHONE, None):
            await sessions.create(user.id, DeviceInfo(user_agent=agent))
        assert notifier.send_new_login.call_count == 3


class TestGeolocation:
    @pytest.fixture
    def geo_settings(self, settings):
        return settings.model_copy(update={"geolocation_enabled": True})

    async def test_successful_lookup(self, geo_settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "city": "Lisbon",
                    "country": "Portugal",
                    "countryCode": "PT",
                    "regionName": "Lisbon",
                },
            )

        client = GeolocationClient(geo_settings, transport=httpx.MockTransport(handler))
        geo = await client.lookup("8.8.8.8")
        assert geo.label == "Lisbon, Portugal"
        assert geo.country_code == "PT"
        assert seen[0].path.endswith("/8.8.8.8")

    async def test_private_addresses_resolve_locally(self, geo_settings):
        def handler(request):
            raise AssertionError("no lookup expected")

        client = GeolocationClient(geo_settings, transport=httpx.MockTransport(handler))
        assert await client.lookup("10.1.2.3") == LOCAL_NETWORK
        assert await client.lookup("127.0.0.1") == LOCAL_NETWORK
        assert await client.lookup("198.51.100.20") == LOCAL_NETWORK

    async def test_failures_fail_open(self, geo_settings):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        client = GeolocationClient(geo_settings, transport=httpx.MockTransport(handler))
        assert await client.lookup("8.8.8.8") is None

    async def test_unresolved_payload(self, geo_settings):
        client = GeolocationClient(
            geo_settings,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"})
            ),
        )
        assert await client.lookup("8.8.8.8") is None

    async def test_disabled_lookup_skips_network(self, settings):
        client = GeolocationClient(settings)
        assert await client.lookup("8.8.8.8") is None


class TestCleanup:
    def test_expired_and_revoked_sessions_are_purged(self, runtime, sessions, user, store, clock):
        stale = open_session(runtime, user.id)
        revoked = open_session(runtime, user.id)
        sessions.revoke(revoked.id)
        clock.advance(days=29)
        fresh = open_session(runtime, user.id)
        clock.advance(days=2)
        assert sessions.cleanup_expired() == 2
        assert list(store.sessions) == [fresh.id]
        assert stale.id not in store.sessions
