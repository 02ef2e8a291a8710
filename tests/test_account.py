"""End-to-end account security flows over the in-memory runtime."""

import pytest

from backoffice_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    StepUpRequiredError,
    ValidationError,
)
from backoffice_auth.service.policy import SecurityEvent
from backoffice_auth.service.runtime import Runtime
from backoffice_auth.service.two_factor import EmailCodeProof, TotpCodeProof, generate_totp
from backoffice_auth.storage.models import DeviceInfo, PasskeyCredential
from conftest import (
    FIREFOX_WINDOWS,
    PASSWORD,
    SAFARI_IPHONE,
    new_session,
    open_session,
    sent_code,
    step_up_session,
)

NEW_PASSWORD = "Another-Strong-Passphrase-4"


@pytest.fixture
def account(runtime):
    return runtime.account


@pytest.fixture
def phone():
    return DeviceInfo(user_agent=SAFARI_IPHONE, ip_address="198.51.100.30")


def audited(audit, event):
    return [c for c in audit.record.call_args_list if c.args and c.args[0] == event]


class TestLogin:
    async def test_password_login_without_second_factor(self, account, user, device, audit):
        result = await account.login("Alice@Example.com", PASSWORD, device)
        assert not result.requires_two_factor
        assert result.session.user_id == user.id
        assert audited(audit, SecurityEvent.LOGIN_SUCCESS)

    async def test_unknown_user_and_wrong_password_look_alike(self, account, user, device):
        with pytest.raises(AuthenticationError) as unknown:
            await account.login("nobody@example.com", PASSWORD, device)
        with pytest.raises(AuthenticationError) as wrong:
            await account.login(user.email, "wrong-password", device)
        assert unknown.value.message == wrong.value.message == "Invalid email or password"

    async def test_inactive_account_is_refused(self, account, user, store, device):
        store.set_user_active(user.id, False)
        with pytest.raises(AuthenticationError):
            await account.login(user.email, PASSWORD, device)

    async def test_sixth_attempt_is_rate_limited(self, account, user, device):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await account.login(user.email, "wrong-password", device)
        with pytest.raises(RateLimitedError):
            await account.login(user.email, PASSWORD, device)

    async def test_locked_account_rejects_correct_password(
        self, runtime, account, user, device, audit
    ):
        for _ in range(runtime.settings.lockout_threshold):
            await runtime.login_protection.record_failure(user.email)
        with pytest.raises(AuthenticationError) as excinfo:
            await account.login(user.email, PASSWORD, device)
        assert excinfo.value.message == "Invalid email or password"
        assert audited(audit, SecurityEvent.LOGIN_LOCKED)

    async def test_lockout_notice_is_mailed_once(
        self, settings, store, notifier, audit, clock, device
    ):
        strict = Runtime(
            settings.model_copy(update={"lockout_threshold": 2}),
            store=store,
            connect_cache=False,
            notifier=notifier,
            audit=audit,
            clock=clock,
        )
        created = store.create_user("carol@example.com")
        strict.passwords.set_password(created.id, PASSWORD)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await strict.account.login("carol@example.com", "nope-nope", device)
        notifier.send_lockout_notice.assert_called_once_with("carol@example.com", 15)

    async def test_email_second_factor_mails_code_on_login(
        self, runtime, account, user, device, notifier
    ):
        runtime.store.update_two_factor(user.id, email_enabled=True, preferred_method="email")
        result = await account.login(user.email, PASSWORD, device)
        assert result.requires_two_factor
        assert result.methods == ["email"]
        code = sent_code(notifier.send_two_factor_code)
        session = await account.complete_two_factor_login(
            result.pending_token, EmailCodeProof(code), device
        )
        assert session.user_id == user.id

    async def test_wrong_second_factor_creates_no_session(
        self, runtime, account, user, device, store
    ):
        runtime.store.update_two_factor(user.id, email_enabled=True)
        result = await account.login(user.email, PASSWORD, device)
        with pytest.raises(AuthenticationError):
            await account.complete_two_factor_login(
                result.pending_token, TotpCodeProof("123456"), device
            )
        assert store.list_sessions(user.id) == []

    async def test_totp_login(self, runtime, account, user, device, clock):
        session = await runtime.sessions.create(user.id, device, notify=False)
        setup = runtime.two_factor.begin_totp_setup(session)
        runtime.two_factor.confirm_totp_setup(session, generate_totp(setup.secret, clock.epoch()))
        result = await account.login(user.email, PASSWORD, device)
        assert result.methods == ["totp", "backup"]
        clock.advance(seconds=30)
        created = await account.complete_two_factor_login(
            result.pending_token, TotpCodeProof(generate_totp(setup.secret, clock.epoch())), device
        )
        assert created.id != session.id

    async def test_resend_requires_email_method(self, runtime, account, user, device, clock):
        session = await runtime.sessions.create(user.id, device, notify=False)
        setup = runtime.two_factor.begin_totp_setup(session)
        runtime.two_factor.confirm_totp_setup(
            session, generate_totp(setup.secret, clock.epoch())
        )
        result = await account.login(user.email, PASSWORD, device)
        with pytest.raises(ValidationError):
            await account.resend_login_code(result.pending_token)

    async def test_passkey_login_token_is_single_use(self, runtime, account, user, device):
        token = runtime.capabilities.issue("passkey_sign_in", user.id)
        session = await account.complete_passkey_login(token, device)
        assert session.user_id == user.id
        with pytest.raises(InvalidTokenError):
            await account.complete_passkey_login(token, device)

    def test_logout_revokes_session(self, runtime, account, user):
        session = open_session(runtime, user.id)
        account.logout(session)
        assert not runtime.sessions.is_valid(runtime.sessions.get(session.id))


class TestPasswordChange:
    async def test_stale_session_needs_step_up(self, runtime, account, user, clock):
        session = await new_session(runtime, user.id)
        clock.advance(minutes=15)
        with pytest.raises(StepUpRequiredError):
            await account.change_password(session, PASSWORD, NEW_PASSWORD)

    async def test_change_keeps_current_and_revokes_others(
        self, runtime, account, user, clock, phone, notifier
    ):
        current = await new_session(runtime, user.id)
        other = await runtime.sessions.create(user.id, phone, notify=False)
        clock.advance(minutes=15)
        current = await step_up_session(runtime, current)
        assert await account.change_password(current, PASSWORD, NEW_PASSWORD) == 1
        assert runtime.sessions.is_valid(runtime.sessions.get(current.id))
        assert not runtime.sessions.is_valid(runtime.sessions.get(other.id))
        assert runtime.passwords.verify_password(user.id, NEW_PASSWORD)
        notifier.send_security_alert.assert_called_once()

    async def test_wrong_current_password(self, runtime, account, user):
        session = await new_session(runtime, user.id)
        with pytest.raises(AuthenticationError):
            await account.change_password(session, "not-my-password", NEW_PASSWORD)

    async def test_same_password_is_rejected(self, runtime, account, user):
        session = await new_session(runtime, user.id)
        with pytest.raises(ValidationError):
            await account.change_password(session, PASSWORD, PASSWORD)


class TestPasswordReset:
    async def test_reset_revokes_every_session(
        self, runtime, account, user, notifier, audit
    ):
        first = await new_session(runtime, user.id)
        second = await new_session(runtime, user.id, FIREFOX_WINDOWS)
        await account.request_password_reset(user.email, "203.0.113.7")
        raw = sent_code(notifier.send_password_reset)
        assert await account.complete_password_reset(raw, NEW_PASSWORD) == 2
        for session in (first, second):
            assert not runtime.sessions.is_valid(runtime.sessions.get(session.id))
        assert audited(audit, SecurityEvent.PASSWORD_RESET_COMPLETED)

    async def test_reset_link_cannot_be_replayed(self, account, user, notifier):
        await account.request_password_reset(user.email, "203.0.113.7")
        raw = sent_code(notifier.send_password_reset)
        await account.complete_password_reset(raw, NEW_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await account.complete_password_reset(raw, "Yet-Another-Passphrase-5")

    async def test_unknown_email_is_silent(self, account, notifier):
        await account.request_password_reset("ghost@example.com", "203.0.113.7")
        notifier.send_password_reset.assert_not_called()

    async def test_reset_lifts_lockout(self, runtime, account, user, notifier, device):
        for _ in range(runtime.settings.lockout_threshold):
            await runtime.login_protection.record_failure(user.email)
        await account.request_password_reset(user.email, "203.0.113.7")
        await account.complete_password_reset(sent_code(notifier.send_password_reset), NEW_PASSWORD)
        result = await account.login(user.email, NEW_PASSWORD, device)
        assert result.session is not None

    async def test_weak_password_keeps_token(self, account, user, notifier):
        await account.request_password_reset(user.email, "203.0.113.7")
        raw = sent_code(notifier.send_password_reset)
        with pytest.raises(ValidationError):
            await account.complete_password_reset(raw, "short")
        assert await account.complete_password_reset(raw, NEW_PASSWORD) == 0


class TestEmailChange:
    async def test_change_flow(self, runtime, account, user, store, notifier, phone):
        current = await new_session(runtime, user.id)
        other = await runtime.sessions.create(user.id, phone, notify=False)
        await account.initiate_email_change(current, "alice.new@example.com")
        assert notifier.send_email_change_code.call_args.args[0] == "alice.new@example.com"
        code = sent_code(notifier.send_email_change_code)
        assert await account.verify_email_change(current, code) == 1
        assert store.get_user(user.id).email == "alice.new@example.com"
        assert not runtime.sessions.is_valid(runtime.sessions.get(other.id))
        # The alert goes to the address the account used to have
        assert notifier.send_security_alert.call_args.args[0] == "alice@example.com"

    async def test_taken_address_is_rejected(self, runtime, account, user, store):
        store.create_user("bob@example.com")
        session = await new_session(runtime, user.id)
        with pytest.raises(ConflictError):
            await account.initiate_email_change(session, "Bob@example.com")

    async def test_invalid_address(self, runtime, account, user):
        session = await new_session(runtime, user.id)
        with pytest.raises(ValidationError):
            await account.initiate_email_change(session, "not-an-email")


class TestSessionsAndPasskeys:
    async def test_revoke_someone_elses_session_is_not_found(self, runtime, account, user, store):
        other = store.create_user("bob@example.com")
        theirs = await new_session(runtime, other.id)
        mine = await new_session(runtime, user.id)
        with pytest.raises(NotFoundError):
            await account.revoke_session(mine, theirs.id)
        assert runtime.sessions.is_valid(runtime.sessions.get(theirs.id))

    def test_revoke_all_needs_fresh_auth(self, runtime, account, user, clock):
        session = open_session(runtime, user.id)
        clock.advance(minutes=10)
        with pytest.raises(StepUpRequiredError):
            account.revoke_all_sessions(session)

    def test_revoke_others(self, runtime, account, user):
        mine = open_session(runtime, user.id)
        open_session(runtime, user.id, FIREFOX_WINDOWS)
        assert account.revoke_other_sessions(mine) == 1
        assert runtime.sessions.is_valid(runtime.sessions.get(mine.id))

    async def test_revoke_session_spends_sensitive_action_points(self, runtime, account, user):
        mine = await new_session(runtime, user.id)
        targets = [await new_session(runtime, user.id, FIREFOX_WINDOWS) for _ in range(11)]
        for target in targets[:10]:
            assert await account.revoke_session(mine, target.id)
        with pytest.raises(RateLimitedError):
            await account.revoke_session(mine, targets[10].id)
        assert runtime.sessions.is_valid(runtime.sessions.get(targets[10].id))

    def test_unknown_passkey_delete(self, runtime, account, user):
        session = open_session(runtime, user.id)
        with pytest.raises(NotFoundError):
            account.delete_passkey(session, "missing")

    async def test_passkey_delete_needs_step_up_and_signs_out_others(
        self, runtime, account, user, store, clock, phone, audit
    ):
        passkey = store.create_passkey(
            PasskeyCredential(
                id="pk-1", user_id=user.id, credential_id="cred-1", public_key="unused"
            )
        )
        current = await new_session(runtime, user.id)
        other = await runtime.sessions.create(user.id, phone, notify=False)
        clock.advance(minutes=15)
        with pytest.raises(StepUpRequiredError):
            account.delete_passkey(current, passkey.id)
        assert store.get_passkey(passkey.id) is not None

        current = await step_up_session(runtime, current)
        assert account.delete_passkey(current, passkey.id) == 1
        assert store.get_passkey(passkey.id) is None
        assert runtime.sessions.is_valid(runtime.sessions.get(current.id))
        assert not runtime.sessions.is_valid(runtime.sessions.get(other.id))
        assert audited(audit, SecurityEvent.PASSKEY_DELETED)

    def test_delete_all_passkeys(self, runtime, user, store):
        for n in range(2):
            store.create_passkey(
                PasskeyCredential(
                    id=f"pk-{n}", user_id=user.id, credential_id=f"cred-{n}", public_key="k"
                )
            )
        assert runtime.passkeys.delete_all(user.id) == 2
        assert runtime.passkeys.count(user.id) == 0
        assert runtime.passkeys.delete_all(user.id) == 0


class TestInvitations:
    async def test_invite_and_accept(self, runtime, account, user, notifier, phone, store):
        token = await account.invite_user(user.id, "new.hire@example.com", "editor")
        assert token.type == "user_invite"
        raw = sent_code(notifier.send_invite)
        session = await account.accept_invite(raw, NEW_PASSWORD, phone)
        created = store.get_user(session.user_id)
        assert created.email == "new.hire@example.com"
        assert created.role == "editor"
        with pytest.raises(InvalidTokenError):
            await account.accept_invite(raw, NEW_PASSWORD, phone)

    async def test_existing_user_cannot_be_invited(self, account, user):
        with pytest.raises(ConflictError):
            await account.invite_user(user.id, user.email)


class TestAdministrativeTriggers:
    def test_deactivation_revokes_everything(self, runtime, account, user):
        open_session(runtime, user.id)
        open_session(runtime, user.id, FIREFOX_WINDOWS)
        assert account.deactivate_user(user.id) == 2
        assert runtime.sessions.active_count(user.id) == 0

    def test_role_change_keeps_acting_session(self, runtime, account, user):
        acting = open_session(runtime, user.id)
        open_session(runtime, user.id, FIREFOX_WINDOWS)
        assert account.record_role_change(user.id, "admin", acting.id) == 1
        assert runtime.store.get_user(user.id).role == "admin"

    def test_role_permission_update_hits_every_member(self, runtime, account, user, store):
        bob = store.create_user("bob@example.com")
        open_session(runtime, user.id)
        open_session(runtime, bob.id)
        assert account.record_role_permissions_update([user.id, bob.id]) == 2

    def test_app_access_update_keeps_acting_session(self, runtime, account, user, store):
        acting = open_session(runtime, user.id)
        other = open_session(runtime, user.id, FIREFOX_WINDOWS)
        bob = store.create_user("bob@example.com")
        bystander = open_session(runtime, bob.id)
        assert account.record_user_apps_update(user.id, acting.id) == 1
        assert runtime.sessions.is_valid(runtime.sessions.get(acting.id))
        assert not runtime.sessions.is_valid(runtime.sessions.get(other.id))
        assert runtime.sessions.is_valid(runtime.sessions.get(bystander.id))

    def test_compromise_report(self, runtime, account, user):
        open_session(runtime, user.id)
        assert account.report_account_compromise(user.id) == 1
        with pytest.raises(NotFoundError):
            account.report_account_compromise("missing")
