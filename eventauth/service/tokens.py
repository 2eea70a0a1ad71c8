from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from eventauth.clock import Clock, SystemClock
from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.results import FailureKind, Outcome
from eventauth.service.revocation import RevocationRegistry

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
# Upper bound on a presented token; anything longer is rejected before decoding
MAX_TOKEN_LENGTH = 8192


@dataclass(frozen=True)
class TokenClaims:
    subject_id: int
    subject_email: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str
    issuer: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }


class TokenService:
    """Stateless HS256 access and refresh tokens.

    Each token family has its own signing secret and lifetime. Verification
    never raises: malformed, forged, expired or wrong-family tokens all come
    back as a failed :class:`Outcome`.
    """

    def __init__(
        self,
        settings: Settings,
        revocations: RevocationRegistry,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        if settings.access_secret == settings.refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self.settings = settings
        self.revocations = revocations
        self.clock: Clock = clock or SystemClock()
        self._secrets = {
            ACCESS: settings.access_secret.encode(),
            REFRESH: settings.refresh_secret.encode(),
        }
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }
        self._leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    # Issuance

    def issue_access_token(self, subject_id: int, subject_email: str) -> str:
        return self._issue(ACCESS, subject_id, subject_email)

    def issue_refresh_token(self, subject_id: int, subject_email: str) -> str:
        return self._issue(REFRESH, subject_id, subject_email)

    def issue_tokens(self, subject_id: int, subject_email: str) -> TokenPair:
        access_token = self.issue_access_token(subject_id, subject_email)
        refresh_token = self.issue_refresh_token(subject_id, subject_email)
        expires_at = self.clock.now() + self._ttls[ACCESS]
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at.replace(microsecond=0),
        )

    def _issue(self, token_type: str, subject_id: int, subject_email: str) -> str:
        now = self.clock.now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": str(subject_id),
            "email": subject_email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[token_type]).timestamp()),
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    # Verification

    def verify_access_token(self, token: str) -> Outcome[TokenClaims]:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> Outcome[TokenClaims]:
        return self._verify(token, REFRESH)

    def refresh(self, refresh_token: str) -> Outcome[str]:
        """Mint a new access token from a valid, unrevoked refresh token.

        The refresh token itself is left as is: it is not rotated and stays
        usable until it expires or is revoked.
        """
        verified = self.verify_refresh_token(refresh_token)
        if not verified.ok:
            return Outcome.fail(verified.failure)
        if self.revocations.is_revoked(refresh_token):
            return Outcome.fail(FailureKind.REVOKED)
        claims = verified.value
        return Outcome.success(
            self.issue_access_token(claims.subject_id, claims.subject_email)
        )

    def _verify(self, token: str, expected_type: str) -> Outcome[TokenClaims]:
        payload = self._decode_jwt(token, self._secrets[expected_type])
        if payload is None:
            return Outcome.fail(FailureKind.MISMATCH)
        if payload.get("iss") != self.settings.jwt_issuer:
            return Outcome.fail(FailureKind.MISMATCH)
        if payload.get("token_type") != expected_type:
            logger.warning(
                "token_class_mismatch",
                expected=expected_type,
                presented=payload.get("token_type"),
            )
            return Outcome.fail(FailureKind.MISMATCH)
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
            subject_id = int(payload["sub"])
            expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
            issued_at = datetime.fromtimestamp(iat_ts, tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return Outcome.fail(FailureKind.MISMATCH)
        if expires_at + self._leeway <= self.clock.now():
            return Outcome.fail(FailureKind.EXPIRED)
        return Outcome.success(
            TokenClaims(
                subject_id=subject_id,
                subject_email=str(payload.get("email") or ""),
                token_type=expected_type,
                issued_at=issued_at,
                expires_at=expires_at,
                jti=str(payload.get("jti") or ""),
                issuer=payload["iss"],
            )
        )

    def decode_unverified(self, token: str) -> Optional[dict[str, Any]]:
        """Read a token's payload without checking its signature.

        Only for bookkeeping such as revocation expiry; never for trust.
        """
        if not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
            return None
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            return None
        return payload if isinstance(payload, dict) else None

    def revocation_deadline(self, token: str) -> Optional[datetime]:
        """Point after which a revoked ``token`` can no longer verify."""
        payload = self.decode_unverified(token)
        if not payload:
            return None
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        return expires_at + self._leeway

    # Compact JWT encoding

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        if not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm")
                return None
        except (ValueError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None

        # UnicodeEncodeError (a ValueError) covers lone surrogates in the input
        try:
            signing_input = f"{header_b64}.{payload_b64}".encode()
            presented_sig = sig_b64.encode()
        except ValueError:
            return None
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input, hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), presented_sig):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
