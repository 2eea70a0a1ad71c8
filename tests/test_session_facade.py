"""Tests for the login, logout and password reset flows."""

import base64

import pytest
from argon2 import PasswordHasher, Type

from eventauth.config import Settings
from eventauth.logging import correlation_id_var, get_correlation_id, set_correlation_id
from eventauth.service.email import LOGIN_CODE, PASSWORD_RESET, DeliveryError
from eventauth.service.errors import (
    AuthenticationError,
    DeliveryFailedError,
    ValidationError,
)
from eventauth.service.passwords import PasswordService
from eventauth.service.session import SessionFacade, SessionState
from eventauth.storage.memory import MemoryAccountStore


class RecordingDelivery:
    def __init__(self):
        self.sent = []

    def deliver(self, account_key, payload):
        self.sent.append((account_key, payload))

    def last_secret(self, kind):
        for _, payload in reversed(self.sent):
            if payload.kind == kind:
                return payload.secret
        raise AssertionError(f"no {kind} message was delivered")


class FailingDelivery:
    def __init__(self, exc=None):
        self.exc = exc or DeliveryError("smtp down")
        self.attempts = 0

    def deliver(self, account_key, payload):
        self.attempts += 1
        raise self.exc


@pytest.fixture
def settings():
    return Settings(
        access_secret="facade-access-secret-0123456789abcdef",
        refresh_secret="facade-refresh-secret-0123456789abcdef",
    )


@pytest.fixture
def passwords():
    # Cheap parameters keep the suite fast
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def accounts(passwords):
    store = MemoryAccountStore()
    store.create_account(
        "ada@example.com", name="Ada", password_hash=passwords.hash("hunter22")
    )
    return store


@pytest.fixture
def delivery():
    return RecordingDelivery()


def _facade(accounts, delivery, settings, passwords, clock):
    return SessionFacade(accounts, delivery, settings, passwords=passwords, clock=clock)


@pytest.fixture
def facade(accounts, delivery, settings, passwords, clock):
    return _facade(accounts, delivery, settings, passwords, clock)


async def _login(facade, delivery, email="ada@example.com", password="hunter22"):
    await facade.begin_login(email, password)
    return facade.complete_login(email, delivery.last_secret(LOGIN_CODE))


class TestLogin:
    async def test_begin_login_sends_code(self, facade, delivery):
        challenge = await facade.begin_login("ada@example.com", "hunter22")

        assert challenge.state == SessionState.OTP_PENDING
        assert challenge.expires_in_seconds == 30
        assert challenge.account_key == "ada@example.com"
        key, payload = delivery.sent[0]
        assert key == "ada@example.com"
        assert payload.kind == LOGIN_CODE
        assert payload.recipient_name == "Ada"
        assert len(payload.secret) == 6 and payload.secret.isdigit()

    async def test_complete_login_issues_tokens(self, facade, delivery):
        result = await _login(facade, delivery)

        assert result.state == SessionState.AUTHENTICATED
        assert result.subject_id == 1
        claims = facade.verify_access(result.tokens.access_token)
        assert claims.subject_id == 1
        assert claims.subject_email == "ada@example.com"

    async def test_email_is_normalized(self, facade, delivery):
        await facade.begin_login("  ADA@Example.com ", "hunter22")

        result = facade.complete_login("ada@EXAMPLE.com", delivery.last_secret(LOGIN_CODE))

        assert result.subject_id == 1

    async def test_wrong_password_and_unknown_email_look_the_same(self, facade, delivery):
        with pytest.raises(AuthenticationError) as wrong_password:
            await facade.begin_login("ada@example.com", "nope")
        with pytest.raises(AuthenticationError) as unknown:
            await facade.begin_login("ghost@example.com", "hunter22")

        assert str(wrong_password.value) == str(unknown.value)
        assert wrong_password.value.status_code == 401
        assert delivery.sent == []

    async def test_missing_fields(self, facade):
        with pytest.raises(ValidationError):
            await facade.begin_login("", "hunter22")
        with pytest.raises(ValidationError):
            await facade.begin_login("ada@example.com", "")

    async def test_code_is_single_use(self, facade, delivery):
        await facade.begin_login("ada@example.com", "hunter22")
        code = delivery.last_secret(LOGIN_CODE)

        facade.complete_login("ada@example.com", code)

        with pytest.raises(AuthenticationError):
            facade.complete_login("ada@example.com", code)

    async def test_expired_code_rejected(self, facade, delivery, clock):
        await facade.begin_login("ada@example.com", "hunter22")
        clock.advance(31)

        with pytest.raises(AuthenticationError):
            facade.complete_login("ada@example.com", delivery.last_secret(LOGIN_CODE))

    async def test_wrong_code_keeps_pending_code(self, facade, delivery):
        await facade.begin_login("ada@example.com", "hunter22")
        code = delivery.last_secret(LOGIN_CODE)
        wrong = "100000" if code != "100000" else "100001"

        with pytest.raises(AuthenticationError):
            facade.complete_login("ada@example.com", wrong)

        assert facade.complete_login("ada@example.com", code).subject_id == 1

    async def test_delivery_failure_leaves_no_code(
        self, accounts, settings, passwords, clock
    ):
        failing = FailingDelivery()
        facade = _facade(accounts, failing, settings, passwords, clock)

        with pytest.raises(DeliveryFailedError) as exc_info:
            await facade.begin_login("ada@example.com", "hunter22")

        assert exc_info.value.status_code == 502
        assert str(exc_info.value) == "smtp down"
        assert failing.attempts == 1
        assert len(facade.otp_store) == 0

    async def test_unexpected_delivery_error_is_wrapped(
        self, accounts, settings, passwords, clock
    ):
        facade = _facade(
            accounts, FailingDelivery(RuntimeError("boom")), settings, passwords, clock
        )

        with pytest.raises(DeliveryFailedError) as exc_info:
            await facade.begin_login("ada@example.com", "hunter22")

        assert str(exc_info.value) == "message delivery failed"
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestTokensAndLogout:
    async def test_refresh_access(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        new_access = facade.refresh_access(tokens.refresh_token)

        assert new_access
        assert facade.verify_access(new_access).subject_id == 1

    async def test_refresh_token_is_not_an_access_token(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        assert facade.verify_access(tokens.refresh_token) is None
        assert facade.refresh_access(tokens.access_token) is None

    async def test_logout_revokes_both_tokens(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        revoked = facade.logout(tokens.access_token, tokens.refresh_token)

        assert revoked == 2
        assert facade.is_revoked(tokens.access_token)
        assert facade.verify_access(tokens.access_token) is None
        assert facade.refresh_access(tokens.refresh_token) is None

    async def test_logout_twice_is_harmless(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        facade.logout(tokens.access_token)
        facade.logout(tokens.access_token)

        assert len(facade.revocations) == 1

    def test_logout_ignores_unverifiable_tokens(self, facade):
        assert facade.logout("garbage", "more-garbage") == 0
        assert len(facade.revocations) == 0

    async def test_revoked_entries_carry_token_expiry(self, facade, delivery, clock):
        tokens = (await _login(facade, delivery)).tokens
        facade.logout(tokens.access_token)

        clock.advance(minutes=15, seconds=1)

        assert facade.cleanup_expired_states() == 1
        assert facade.verify_access(tokens.access_token) is None

    async def test_authenticate_bearer_header(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        context = facade.authenticate(f"Bearer {tokens.access_token}")

        assert context.subject_id == 1
        assert context.email == "ada@example.com"
        assert context.name == "Ada"
        assert context.expires_at is not None

    async def test_authenticate_rejects(self, facade, delivery):
        tokens = (await _login(facade, delivery)).tokens

        assert facade.authenticate(None) is None
        assert facade.authenticate("") is None
        assert facade.authenticate(f"Basic {tokens.access_token}") is None
        assert facade.authenticate("Bearer ") is None
        assert facade.authenticate(f"Bearer {tokens.refresh_token}") is None

        facade.logout(tokens.access_token)
        assert facade.authenticate(f"Bearer {tokens.access_token}") is None


class TestPasswordReset:
    async def test_reset_flow(self, facade, delivery):
        await facade.request_password_reset("ada@example.com")
        key, payload = delivery.sent[-1]
        assert key == "ada@example.com"
        assert payload.kind == PASSWORD_RESET
        assert payload.ttl_seconds == 15 * 60

        account_id = facade.complete_password_reset(
            "ada@example.com", payload.secret, "correct horse"
        )

        assert account_id == 1
        with pytest.raises(AuthenticationError):
            await facade.begin_login("ada@example.com", "hunter22")
        assert (await _login(facade, delivery, password="correct horse")).subject_id == 1

    async def test_unknown_email_is_silent(self, facade, delivery):
        assert await facade.request_password_reset("ghost@example.com") is None
        assert delivery.sent == []
        assert len(facade.reset_store) == 0

    async def test_reset_token_single_use(self, facade, delivery):
        await facade.request_password_reset("ada@example.com")
        token = delivery.last_secret(PASSWORD_RESET)
        facade.complete_password_reset("ada@example.com", token, "first-new")

        with pytest.raises(AuthenticationError):
            facade.complete_password_reset("ada@example.com", token, "second-new")

    async def test_reset_token_expires(self, facade, delivery, clock):
        await facade.request_password_reset("ada@example.com")
        clock.advance(minutes=16)

        with pytest.raises(AuthenticationError):
            facade.complete_password_reset(
                "ada@example.com", delivery.last_secret(PASSWORD_RESET), "new-pass"
            )

    async def test_short_password_rejected_before_token_is_spent(self, facade, delivery):
        await facade.request_password_reset("ada@example.com")
        token = delivery.last_secret(PASSWORD_RESET)

        with pytest.raises(ValidationError):
            facade.complete_password_reset("ada@example.com", token, "abc")

        assert facade.complete_password_reset("ada@example.com", token, "abcd") == 1

    async def test_reset_discards_pending_login_code(self, facade, delivery):
        await facade.begin_login("ada@example.com", "hunter22")
        code = delivery.last_secret(LOGIN_CODE)
        await facade.request_password_reset("ada@example.com")

        facade.complete_password_reset(
            "ada@example.com", delivery.last_secret(PASSWORD_RESET), "new-pass"
        )

        with pytest.raises(AuthenticationError):
            facade.complete_login("ada@example.com", code)

    async def test_delivery_failure_discards_token(
        self, accounts, settings, passwords, clock
    ):
        facade = _facade(accounts, FailingDelivery(), settings, passwords, clock)

        with pytest.raises(DeliveryFailedError):
            await facade.request_password_reset("ada@example.com")

        assert len(facade.reset_store) == 0


class TestPassThrough:
    def test_otp_round_trip(self, facade):
        code = facade.issue_otp("a@b.com", 7)

        assert facade.verify_otp("a@b.com", code) == 7
        assert facade.verify_otp("a@b.com", code) is None

    def test_reset_token_round_trip(self, facade):
        token = facade.issue_reset_token("a@b.com", 7)

        assert facade.verify_reset_token("a@b.com", "wrong") is None
        assert facade.verify_reset_token("a@b.com", token) == 7

    def test_revoke_and_is_revoked(self, facade):
        pair = facade.issue_tokens(7, "a@b.com")

        facade.revoke(pair.access_token)

        assert facade.is_revoked(pair.access_token)
        assert not facade.is_revoked(pair.refresh_token)
        assert facade.verify_access(pair.access_token) is None


class TestCleanup:
    def test_cleanup_expired_states(self, facade, clock):
        facade.issue_otp("a@b.com", 1)
        facade.issue_reset_token("a@b.com", 1)
        facade.revocations.revoke("opaque")

        clock.advance(minutes=20)

        assert facade.cleanup_expired_states() == 2
        assert facade.is_revoked("opaque")

    def test_maybe_cleanup_respects_interval(self, facade, clock):
        facade.issue_otp("a@b.com", 1)
        clock.advance(minutes=1)

        assert facade.maybe_cleanup() == 0

        clock.advance(minutes=4)
        assert facade.maybe_cleanup() == 1
        assert facade.maybe_cleanup() == 0


class TestHostileInput:
    def test_nested_header_rejected_at_bearer_gate(self, facade):
        nested = base64.urlsafe_b64encode(b"[" * 5000).decode().rstrip("=")
        token = f"{nested}.e30.sig"

        assert facade.authenticate(f"Bearer {token}") is None
        assert facade.verify_access(token) is None
        assert facade.refresh_access(token) is None
        assert facade.logout(token, token) == 0

    def test_lone_surrogates_rejected(self, facade):
        pair = facade.issue_tokens(7, "a@b.com")
        head, body, _ = pair.access_token.split(".")

        assert facade.authenticate(f"Bearer {head}.{body}.\ud800") is None
        assert facade.verify_otp("\ud800@b.com", "123456") is None
        assert facade.verify_reset_token("a@b.com", "\ud800") is None

    async def test_unencodable_login_input(self, facade, delivery):
        with pytest.raises(AuthenticationError):
            await facade.begin_login("\ud800@example.com", "hunter22")

        await facade.begin_login("ada@example.com", "hunter22")
        with pytest.raises(AuthenticationError):
            facade.complete_login("ada@example.com", "\ud800")
        assert facade.complete_login(
            "ada@example.com", delivery.last_secret(LOGIN_CODE)
        ).subject_id == 1


class TestCorrelationId:
    async def test_login_flow_shares_one_id(self, facade, delivery):
        correlation_id_var.set(None)

        await facade.begin_login("ada@example.com", "hunter22")
        cid = get_correlation_id()
        facade.complete_login("ada@example.com", delivery.last_secret(LOGIN_CODE))

        assert cid
        assert get_correlation_id() == cid

    async def test_caller_id_is_kept(self, facade):
        set_correlation_id("req-123")

        await facade.request_password_reset("ada@example.com")

        assert get_correlation_id() == "req-123"
