from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from taskdesk.logging import get_logger
from taskdesk.service.errors import SessionRevokedError, UnauthenticatedError
from taskdesk.service.policy import Actor
from taskdesk.service.tokens import TokenService

logger = get_logger(__name__)


class SessionStore(Protocol):
    def has_live_session(
        self, session_id: str, user_id: str, now: Optional[datetime] = None
    ) -> bool: ...


class SessionGuard:
    """Per-request bearer authentication.

    A request moves through missing header, token present, token valid and
    session live before an :class:`Actor` is produced. The session-live step
    looks up the refresh row named by the token's ``sid`` claim, so logout,
    password reset and admin revocation reject outstanding access tokens on
    the very next request, even after the user signs in again.
    """

    def __init__(self, tokens: TokenService, store: SessionStore) -> None:
        self.tokens = tokens
        self.store = store

    @staticmethod
    def extract_bearer(header: Optional[str]) -> str:
        if not header:
            raise UnauthenticatedError("missing bearer token")
        scheme, _, token = header.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token or " " in token:
            raise UnauthenticatedError("malformed authorization header")
        return token

    def authenticate(self, authorization: Optional[str]) -> Actor:
        token = self.extract_bearer(authorization)
        claims = self.tokens.verify_access(token)
        user_id, session_id = claims["sub"], claims["sid"]
        if not self.store.has_live_session(session_id, user_id, self.tokens.now()):
            logger.info("session_revoked_rejected", user_id=user_id, session_id=session_id)
            raise SessionRevokedError("session has been revoked; sign in again")
        return Actor(id=user_id, email=claims.get("email", ""), role=claims.get("role", "user"))
