from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service.errors import (
    ExpiredSessionError,
    InvalidTokenError,
    SessionRevokedError,
    ValidationError,
)
from taskdesk.storage.models import RefreshToken, User

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_RESET = "reset"


class TokenStore(Protocol):
    def create_refresh_token(
        self, user_id: str, token: str, ttl_minutes: int
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "bearer"


@dataclass
class RotatedAccess:
    user: User
    access_token: str
    access_expires_at: datetime


class TokenService:
    """Issues, verifies and rotates HS256 bearer tokens.

    Access tokens are short-lived and carry user id, email, role and ``sid``,
    the id of the refresh row they were minted for. Refresh tokens are signed
    with a separate secret and are only honoured while their row exists in
    the store. An access token dies with its own row, so signing in again
    after a revocation does not bring older access tokens back.

    Expiry is strict: a token is expired once ``now > exp``. No clock-skew
    leeway is applied.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(
        self, token: str, secret: str, *, expected_type: str
    ) -> Optional[dict[str, Any]]:
        """Return verified claims or ``None`` when any check fails."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if payload.get("token_type") != expected_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if self._clock() > exp_ts:
            logger.info("jwt_expired", token_type=expected_type)
            return None
        return payload

    # issuance
    def _base_claims(self, user_id: str, token_type: str, ttl_minutes: int) -> dict[str, Any]:
        issued_at = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + ttl_minutes * 60,
        }

    def issue_access_token(self, user: User, session_id: str) -> tuple[str, datetime]:
        """Sign an access token tied to the refresh row ``session_id``."""
        claims = self._base_claims(
            user.id, TOKEN_TYPE_ACCESS, self.settings.access_token_ttl_minutes
        )
        claims.update({"sid": session_id, "email": user.email, "role": user.role})
        token = self._encode_jwt(claims, self.settings.jwt_secret)
        return token, datetime.fromtimestamp(claims["exp"], tz=timezone.utc)

    def issue_session(self, user: User) -> IssuedSession:
        """Persist a refresh row and mint an access token bound to it."""
        refresh_claims = self._base_claims(
            user.id, TOKEN_TYPE_REFRESH, self.settings.refresh_token_ttl_minutes
        )
        refresh_token = self._encode_jwt(refresh_claims, self.settings.jwt_refresh_secret)
        record = self.store.create_refresh_token(
            user.id, refresh_token, self.settings.refresh_token_ttl_minutes
        )
        access_token, access_exp = self.issue_access_token(user, record.id)
        logger.info("session_issued", user_id=user.id, session_id=record.id)
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=record.expires_at,
            session_id=record.id,
        )

    # verification
    def verify_access(self, token: str) -> dict[str, Any]:
        claims = self._decode_jwt(token, self.settings.jwt_secret, expected_type=TOKEN_TYPE_ACCESS)
        if claims is None or not claims.get("sub") or not claims.get("sid"):
            raise InvalidTokenError("invalid or expired access token")
        return claims

    def rotate(self, refresh_token: str) -> RotatedAccess:
        """Exchange a stored refresh token for a new access token.

        The refresh token stays valid; only logout, expiry and administrative
        revocation remove it.
        """
        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            raise SessionRevokedError("session has been revoked")

        claims = self._decode_jwt(
            refresh_token, self.settings.jwt_refresh_secret, expected_type=TOKEN_TYPE_REFRESH
        )
        if claims is None or record.is_expired(self.now()):
            # Deleting an already-deleted row is a no-op
            self.store.delete_refresh_token(refresh_token)
            logger.info("refresh_token_expired", user_id=record.user_id)
            raise ExpiredSessionError("refresh token expired")

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active or claims.get("sub") != user.id:
            self.store.delete_refresh_token(refresh_token)
            raise SessionRevokedError("session has been revoked")

        access_token, access_exp = self.issue_access_token(user, record.id)
        return RotatedAccess(user=user, access_token=access_token, access_expires_at=access_exp)

    # revocation
    def revoke(self, refresh_token: str) -> bool:
        return self.store.delete_refresh_token(refresh_token)

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(self.now())
        if removed:
            logger.info("refresh_tokens_swept", count=removed)
        return removed

    # password reset
    @staticmethod
    def _password_fingerprint(password_hash: Optional[str]) -> str:
        return hashlib.sha256((password_hash or "").encode()).hexdigest()[:16]

    def issue_reset_token(self, user: User, password_hash: Optional[str]) -> str:
        """Sign a reset token bound to the user's current password hash.

        Once the password changes the fingerprint no longer matches, so each
        token can be redeemed at most once.
        """
        claims = self._base_claims(
            user.id, TOKEN_TYPE_RESET, self.settings.password_reset_ttl_minutes
        )
        claims["pwd"] = self._password_fingerprint(password_hash)
        return self._encode_jwt(claims, self.settings.jwt_secret)

    def verify_reset_token(self, token: str, password_hash_for: Callable[[str], Optional[str]]) -> str:
        """Return the user id the reset token was issued for."""
        claims = self._decode_jwt(token, self.settings.jwt_secret, expected_type=TOKEN_TYPE_RESET)
        if claims is None or not claims.get("sub"):
            raise ValidationError("invalid or expired reset token")
        user_id = claims["sub"]
        if not hmac.compare_digest(
            str(claims.get("pwd", "")), self._password_fingerprint(password_hash_for(user_id))
        ):
            raise ValidationError("invalid or expired reset token")
        return user_id
