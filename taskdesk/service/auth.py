from __future__ import annotations

import hashlib
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service import mail_templates
from taskdesk.service.activity import (
    PASSWORD_RESET,
    UPDATE_PROFILE,
    USER_LOGGED_IN,
    USER_LOGGED_OUT,
    USER_REGISTERED,
    ActivityLogService,
)
from taskdesk.service.email import EmailService
from taskdesk.service.errors import (
    ConflictError,
    ForbiddenActionError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from taskdesk.service.policy import Actor
from taskdesk.service.tokens import IssuedSession, RotatedAccess, TokenService
from taskdesk.storage.errors import ConstraintViolation
from taskdesk.storage.models import User
from taskdesk.storage.redis_cache import RedisCache

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}
OAUTH_STATE_TTL = timedelta(minutes=10)
MIN_PASSWORD_LENGTH = 6
PASSWORD_ALGO = "argon2id"

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError("a valid email address is required", detail={"field": "email"})
    return normalized


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Account lifecycle for end users: sign-up, sign-in, sessions and profile."""

    def __init__(
        self,
        store,
        tokens: TokenService,
        activity: ActivityLogService,
        email: EmailService,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.activity = activity
        self.email = email
        self.settings = settings
        self.cache = cache
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, Tuple[str, datetime]] = {}
        self.logger = logger

    # passwords
    @staticmethod
    def _validate_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            # Accounts created through Google have no password
            self.logger.info("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def _current_password_hash(self, user_id: str) -> Optional[str]:
        record = self.store.get_password_record(user_id)
        return record[0] if record else None

    # registration and sessions
    async def register(self, name: str, email: str, password: str) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenActionError("signup is disabled")
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        email = normalize_email(email)
        self._validate_password(password)

        with self.store.transaction():
            existing = self.store.get_user_by_email(email)
            if existing is not None:
                if not existing.is_active:
                    raise ConflictError("account is deactivated; contact an administrator")
                raise ConflictError("email is already registered", detail={"field": "email"})
            pwd_hash, algo = self._hash_password(password)
            try:
                user = self.store.create_user(name, email)
            except ConstraintViolation as exc:
                raise ConflictError("email is already registered", detail=exc.detail) from exc
            self.store.save_password(user.id, pwd_hash, algo)
            self.activity.record(user.id, USER_REGISTERED, f"New account created for {email}")

        self.logger.info("user_registered", user_id=user.id)
        await self.email.dispatch(mail_templates.welcome(user), user.email)
        return user

    def login(self, email: str, password: str) -> Tuple[User, IssuedSession]:
        try:
            email = normalize_email(email)
        except ValidationError:
            raise UnauthenticatedError("invalid credentials")
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("login_unknown_email", email_hash=_email_hash(email))
            raise UnauthenticatedError("invalid credentials")
        if not user.is_active:
            raise ForbiddenActionError("account is deactivated; contact an administrator")
        if not self.verify_password(user.id, password or ""):
            raise UnauthenticatedError("invalid credentials")
        session = self.tokens.issue_session(user)
        self.activity.record(user.id, USER_LOGGED_IN, f"{user.email} logged in")
        return user, session

    def refresh(self, refresh_token: str) -> RotatedAccess:
        if not refresh_token:
            raise ValidationError("refresh_token is required", detail={"field": "refresh_token"})
        return self.tokens.rotate(refresh_token)

    def logout(self, actor: Actor) -> int:
        """End every session of ``actor``; outstanding access tokens stop working."""
        with self.store.transaction():
            removed = self.tokens.revoke_all(actor.id)
            self.activity.record(actor.id, USER_LOGGED_OUT, "User logged out")
        return removed

    # password reset
    async def request_password_reset(self, email: str) -> Optional[str]:
        """Email a reset link when ``email`` belongs to an active account.

        Callers always report success so the endpoint cannot be used to probe
        which addresses are registered. The token is returned for internal use.
        """
        try:
            email = normalize_email(email)
        except ValidationError:
            return None
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            self.logger.info("password_reset_ignored", email_hash=_email_hash(email))
            return None
        token = self.tokens.issue_reset_token(user, self._current_password_hash(user.id))
        reset_url = f"{self.settings.app_base_url.rstrip('/')}/reset-password?token={quote(token)}"
        message = mail_templates.password_reset(
            user, reset_url, self.settings.password_reset_ttl_minutes
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        await self.email.dispatch(message, user.email)
        return token

    def reset_password(self, token: str, new_password: str) -> User:
        self._validate_password(new_password)
        with self.store.transaction():
            user_id = self.tokens.verify_reset_token(token, self._current_password_hash)
            user = self.store.get_user(user_id)
            if user is None or not user.is_active:
                raise ValidationError("invalid or expired reset token")
            pwd_hash, algo = self._hash_password(new_password)
            self.store.save_password(user.id, pwd_hash, algo)
            self.tokens.revoke_all(user.id)
            self.activity.record(user.id, PASSWORD_RESET, "Password reset via emailed link")
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # profile
    def get_profile(self, actor: Actor) -> User:
        user = self.store.get_user(actor.id)
        if user is None or not user.is_active:
            raise NotFoundError("user not found")
        return user

    def update_profile(
        self,
        actor: Actor,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        updates: dict = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("name cannot be empty", detail={"field": "name"})
            updates["name"] = name.strip()
        if email is not None:
            updates["email"] = normalize_email(email)
        if bio is not None:
            updates["bio"] = bio.strip() or None
        if not updates:
            raise ValidationError("no profile fields to update")

        with self.store.transaction():
            current = self.get_profile(actor)
            try:
                user = self.store.update_user(current.id, **updates)
            except ConstraintViolation as exc:
                raise ConflictError("email is already registered", detail=exc.detail) from exc
            self.activity.record(
                current.id,
                UPDATE_PROFILE,
                f"Profile updated: {', '.join(sorted(updates))}",
            )
        return user

    def list_directory(
        self, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[list[User], int]:
        users = self.store.list_users(order_by="name", offset=offset, limit=limit)
        return users, self.store.count_users()

    # Google OAuth
    @property
    def oauth_enabled(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        )

    async def start_oauth(self) -> dict:
        if not self.oauth_enabled:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ValidationError("Google sign-in is not configured")
        state = secrets.token_urlsafe(24)
        expires_at = datetime.now(timezone.utc) + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, "google", expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = ("google", expires_at)
        params = {
            "client_id": self.settings.oauth_google_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return {
            "authorization_url": f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": "google",
        }

    async def _pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    async def _exchange_oauth_code(self, code: str) -> Optional[dict]:
        """Trade an authorization code for the Google account's email and name."""
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    return None
                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider="google", error=str(exc))
            return None
        if not isinstance(userinfo, dict) or not userinfo.get("email"):
            self.logger.error("oauth_identity_missing_email", provider="google")
            return None
        return {
            "email": userinfo["email"],
            "name": userinfo.get("name") or userinfo["email"].split("@")[0],
        }

    def _find_or_create_oauth_user(self, email: str, name: str) -> User:
        with self.store.transaction():
            user = self.store.get_user_by_email(email)
            if user is not None:
                return user
            try:
                user = self.store.create_user(name, email)
            except ConstraintViolation as exc:
                raise ConflictError("email is already registered", detail=exc.detail) from exc
            self.activity.record(user.id, USER_REGISTERED, f"New account created for {email} via Google")
        return user

    async def complete_oauth(self, code: str, state: str) -> Tuple[User, IssuedSession]:
        stored = await self._pop_oauth_state(state)
        if stored is None or stored[0] != "google" or stored[1] < datetime.now(timezone.utc):
            raise UnauthenticatedError("invalid or expired oauth state")
        identity = await self._exchange_oauth_code(code)
        if not identity:
            raise UnauthenticatedError("google sign-in failed")
        user = self._find_or_create_oauth_user(normalize_email(identity["email"]), identity["name"])
        if not user.is_active:
            raise ForbiddenActionError("account is deactivated; contact an administrator")
        session = self.tokens.issue_session(user)
        self.activity.record(user.id, USER_LOGGED_IN, f"{user.email} logged in via Google")
        return user, session
