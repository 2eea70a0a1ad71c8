from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from eventauth.clock import Clock, RandomSource, SecureRandom, SystemClock
from eventauth.config import Settings
from eventauth.logging import email_hash, ensure_correlation_id, get_logger
from eventauth.service.email import (
    LOGIN_CODE,
    PASSWORD_RESET,
    Delivery,
    DeliveryError,
    DeliveryPayload,
)
from eventauth.service.errors import (
    AuthenticationError,
    DeliveryFailedError,
    ValidationError,
)
from eventauth.service.otp import OtpStore
from eventauth.service.passwords import PasswordService
from eventauth.service.reset_tokens import ResetTokenStore
from eventauth.service.results import FailureKind, Outcome
from eventauth.service.revocation import RevocationRegistry
from eventauth.service.tokens import TokenClaims, TokenPair, TokenService
from eventauth.storage.models import AccountRecord, normalize_account_key

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
INVALID_CODE = "invalid or expired code"
INVALID_RESET_TOKEN = "invalid or expired reset token"
MIN_PASSWORD_LENGTH = 4


class AccountStore(Protocol):
    def get_account(self, account_id: int) -> Optional[AccountRecord]: ...

    def get_account_by_email(self, email: str) -> Optional[AccountRecord]: ...

    def save_password(self, account_id: int, password_hash: str) -> None: ...


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    OTP_PENDING = "otp_pending"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class LoginChallenge:
    account_key: str
    expires_in_seconds: int
    state: SessionState = SessionState.OTP_PENDING


@dataclass(frozen=True)
class LoginResult:
    subject_id: int
    tokens: TokenPair
    state: SessionState = SessionState.AUTHENTICATED


@dataclass
class AuthContext:
    subject_id: int
    email: str
    name: Optional[str] = None
    expires_at: Optional[datetime] = None


class SessionFacade:
    """Password, login code, token and logout flow over injected stores.

    There is no server-side session: a caller is authenticated exactly when
    it holds an access token that verifies and has not been revoked. Every
    verification failure reaching a caller is the same opaque signal; the
    specific :class:`FailureKind` only goes to the log.
    """

    def __init__(
        self,
        accounts: AccountStore,
        delivery: Delivery,
        settings: Settings,
        *,
        otp_store: Optional[OtpStore] = None,
        reset_store: Optional[ResetTokenStore] = None,
        revocations: Optional[RevocationRegistry] = None,
        tokens: Optional[TokenService] = None,
        passwords: Optional[PasswordService] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.accounts = accounts
        self.delivery = delivery
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        rng = random_source or SecureRandom()
        self.otp_store = otp_store or OtpStore(
            ttl_seconds=settings.otp_ttl_seconds, clock=self.clock, random_source=rng
        )
        self.reset_store = reset_store or ResetTokenStore(
            ttl_minutes=settings.reset_token_ttl_minutes,
            clock=self.clock,
            random_source=rng,
        )
        self.revocations = revocations or RevocationRegistry(clock=self.clock)
        self.tokens = tokens or TokenService(settings, self.revocations, clock=self.clock)
        self.passwords = passwords or PasswordService()
        self.logger = logger
        self._last_cleanup = self.clock.now()

    def _reject(self, event: str, kind: Optional[FailureKind], **fields) -> None:
        self.logger.info(event, failure=kind.value if kind else None, **fields)

    # Ephemeral credential operations

    def issue_otp(self, account_key: str, subject_id: int) -> str:
        return self.otp_store.issue(account_key, subject_id)

    def verify_otp(self, account_key: str, code: str) -> Optional[int]:
        outcome = self.otp_store.verify(account_key, code)
        if not outcome.ok:
            self._reject(
                "otp_verify_failed",
                outcome.failure,
                email_hash=email_hash(normalize_account_key(account_key)),
            )
        return outcome.unwrap_or_none()

    def issue_reset_token(self, account_key: str, subject_id: int) -> str:
        return self.reset_store.issue(account_key, subject_id)

    def verify_reset_token(self, account_key: str, token: str) -> Optional[int]:
        outcome = self.reset_store.verify(account_key, token)
        if not outcome.ok:
            self._reject(
                "password_reset_verify_failed",
                outcome.failure,
                email_hash=email_hash(normalize_account_key(account_key)),
            )
        return outcome.unwrap_or_none()

    def issue_tokens(self, subject_id: int, email: str) -> TokenPair:
        pair = self.tokens.issue_tokens(subject_id, email)
        self.logger.info("tokens_issued", subject_id=subject_id)
        return pair

    def verify_access(self, token: str) -> Optional[TokenClaims]:
        outcome = self._check_access(token)
        if not outcome.ok:
            self._reject("access_token_rejected", outcome.failure)
        return outcome.unwrap_or_none()

    def _check_access(self, token: str) -> Outcome[TokenClaims]:
        if self.revocations.is_revoked(token):
            return Outcome.fail(FailureKind.REVOKED)
        return self.tokens.verify_access_token(token)

    def refresh_access(self, refresh_token: str) -> Optional[str]:
        outcome = self.tokens.refresh(refresh_token)
        if not outcome.ok:
            self._reject("refresh_rejected", outcome.failure)
        return outcome.unwrap_or_none()

    def revoke(self, token: str) -> None:
        self.revocations.revoke(token, self.tokens.revocation_deadline(token))

    def is_revoked(self, token: str) -> bool:
        return self.revocations.is_revoked(token)

    # Login flow

    async def begin_login(self, email: str, password: str) -> LoginChallenge:
        """Check the password and send a login code.

        UNAUTHENTICATED -> OTP_PENDING. Raises AuthenticationError for an
        unknown email or wrong password (same message for both) and
        DeliveryFailedError when the code could not be sent, in which case
        no code is left outstanding.
        """
        ensure_correlation_id()
        key = normalize_account_key(email)
        if not key or not password:
            raise ValidationError("email and password are required")
        account = self.accounts.get_account_by_email(key)
        if not account or not self.passwords.verify(account.password_hash, password):
            self.logger.info(
                "login_rejected",
                email_hash=email_hash(key),
                account_found=account is not None,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        code = self.otp_store.issue(key, account.id)
        payload = DeliveryPayload(
            kind=LOGIN_CODE,
            secret=code,
            ttl_seconds=self.settings.otp_ttl_seconds,
            recipient_name=account.name,
        )
        await self._deliver(
            key, payload, on_failure=lambda: self.otp_store.discard(key, code=code)
        )
        self.logger.info("login_code_sent", subject_id=account.id)
        return LoginChallenge(
            account_key=key, expires_in_seconds=self.settings.otp_ttl_seconds
        )

    def complete_login(self, email: str, code: str) -> LoginResult:
        """OTP_PENDING -> AUTHENTICATED: consume the code and mint tokens."""
        ensure_correlation_id()
        key = normalize_account_key(email)
        subject_id = self.verify_otp(key, code)
        if subject_id is None:
            raise AuthenticationError(INVALID_CODE)
        account = self.accounts.get_account(subject_id)
        if not account:
            self.logger.warning("login_account_missing", subject_id=subject_id)
            raise AuthenticationError(INVALID_CODE)
        tokens = self.issue_tokens(account.id, account.email)
        return LoginResult(subject_id=account.id, tokens=tokens)

    def logout(self, access_token: str, refresh_token: Optional[str] = None) -> int:
        """AUTHENTICATED -> UNAUTHENTICATED.

        Revokes the access token and, when given, the paired refresh token.
        Tokens that no longer verify are skipped since they are already
        unusable. Returns the number of tokens revoked.
        """
        ensure_correlation_id()
        revoked = 0
        presented = [(access_token, self.tokens.verify_access_token)]
        if refresh_token:
            presented.append((refresh_token, self.tokens.verify_refresh_token))
        for token, verify in presented:
            if not token or not verify(token).ok:
                continue
            self.revoke(token)
            revoked += 1
        self.logger.info("logout", revoked=revoked)
        return revoked

    # Password reset flow

    async def request_password_reset(self, email: str) -> None:
        """Send a reset link if the account exists.

        Returns normally for unknown addresses so the response does not
        reveal which emails are registered. Raises DeliveryFailedError if
        the message for a real account could not be sent.
        """
        ensure_correlation_id()
        key = normalize_account_key(email)
        if not key:
            raise ValidationError("email is required")
        account = self.accounts.get_account_by_email(key)
        if not account:
            self.logger.info("password_reset_unknown_account", email_hash=email_hash(key))
            return
        token = self.reset_store.issue(key, account.id)
        payload = DeliveryPayload(
            kind=PASSWORD_RESET,
            secret=token,
            ttl_seconds=self.settings.reset_token_ttl_minutes * 60,
            recipient_name=account.name,
        )
        await self._deliver(
            key, payload, on_failure=lambda: self.reset_store.discard(key, token=token)
        )
        self.logger.info("password_reset_requested", subject_id=account.id)

    def complete_password_reset(self, email: str, token: str, new_password: str) -> int:
        """Consume a reset token and store the new password hash.

        Tokens already issued to the account stay valid until they expire or
        are revoked; there is no per-account token index to sweep.
        """
        ensure_correlation_id()
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        key = normalize_account_key(email)
        subject_id = self.verify_reset_token(key, token)
        if subject_id is None:
            raise AuthenticationError(INVALID_RESET_TOKEN)
        account = self.accounts.get_account(subject_id)
        if not account:
            self.logger.warning("password_reset_account_missing", subject_id=subject_id)
            raise AuthenticationError(INVALID_RESET_TOKEN)
        self.accounts.save_password(account.id, self.passwords.hash(new_password))
        # A pending login code was issued against the old password
        self.otp_store.discard(key)
        self.logger.info("password_reset_completed", subject_id=account.id)
        return account.id

    async def _deliver(self, key: str, payload: DeliveryPayload, *, on_failure) -> None:
        # Runs after the store lock is released; SMTP can block for seconds
        try:
            await asyncio.to_thread(self.delivery.deliver, key, payload)
        except Exception as exc:
            on_failure()
            self._reject(
                "delivery_failed",
                FailureKind.DELIVERY_FAILED,
                email_hash=email_hash(key),
                message_kind=payload.kind,
                error_type=type(exc).__name__,
            )
            message = str(exc) if isinstance(exc, DeliveryError) else "message delivery failed"
            raise DeliveryFailedError(message) from exc

    # Authentication gate

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header to the calling account."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        claims = self.verify_access(token)
        if not claims:
            return None
        account = self.accounts.get_account(claims.subject_id)
        if not account:
            self.logger.info("access_token_account_missing", subject_id=claims.subject_id)
            return None
        return AuthContext(
            subject_id=account.id,
            email=account.email,
            name=account.name,
            expires_at=claims.expires_at,
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    # Housekeeping

    def cleanup_expired_states(self) -> int:
        """Drop expired codes, reset tokens and revocation entries.

        Returns:
            Number of expired entries removed
        """
        otp = self.otp_store.sweep_expired()
        reset = self.reset_store.sweep_expired()
        revoked = self.revocations.sweep_expired()
        cleaned = otp + reset + revoked
        if cleaned > 0:
            self.logger.debug(
                "auth_state_cleanup", cleaned=cleaned, otp=otp, reset=reset, revoked=revoked
            )
        self._last_cleanup = self.clock.now()
        return cleaned

    def maybe_cleanup(self, interval_minutes: Optional[int] = None) -> int:
        """Run cleanup if the interval has elapsed since the last one."""
        interval = interval_minutes or self.settings.cleanup_interval_minutes
        if self.clock.now() - self._last_cleanup >= timedelta(minutes=interval):
            return self.cleanup_expired_states()
        return 0
