from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from freeme.logging import get_logger
from freeme.service.tokens import constant_time_equals, generate_csrf_token
from freeme.storage.models import Session


class SessionStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: Optional[str] = None


class AuthService:
    """Resolves the caller's identity from sessions written by the identity provider.

    Session issuance lives with the identity provider; this service only reads
    sessions and manages the CSRF token attached to them.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @staticmethod
    def _is_expired(sess: Session) -> bool:
        expires_at = sess.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc)

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id_header: Optional[str] = None,
        session_cookie: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Return the authenticated identity, or None.

        The bearer token takes precedence over a session id supplied by header
        or cookie. Expired sessions are treated as absent.
        """
        token = self._extract_bearer(authorization) or session_id_header or session_cookie
        if not token:
            return None
        sess = self.store.get_session(token)
        if not sess:
            self.logger.info("session_not_found")
            return None
        if self._is_expired(sess):
            self.logger.info("session_expired", user_id=sess.user_id)
            return None
        return AuthContext(user_id=sess.user_id, session_id=sess.id)

    def issue_csrf_token(self, ctx: AuthContext) -> str:
        """Attach a fresh CSRF token to the caller's session and return it."""
        if not ctx.session_id:
            raise ValueError("CSRF tokens require a session")
        sess = self.store.get_session(ctx.session_id)
        meta: dict[str, Any] = dict(sess.meta or {}) if sess else {}
        token = generate_csrf_token()
        meta["csrf_token"] = token
        self.store.set_session_meta(ctx.session_id, meta)
        return token

    def verify_csrf(
        self, session_id: str, header_token: Optional[str], cookie_token: Optional[str]
    ) -> bool:
        """Double-submit check: header, cookie and session token must all agree."""
        if not constant_time_equals(header_token, cookie_token):
            return False
        sess = self.store.get_session(session_id)
        expected = sess.meta.get("csrf_token") if sess and isinstance(sess.meta, dict) else None
        return constant_time_equals(expected, header_token)
