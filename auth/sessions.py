"""
auth/sessions.py -- Server-side sessions and the session issuer.

A session is a row in the sessions table keyed by HMAC-SHA256(SECRET_KEY,
token). The browser holds only the raw random token in an httpOnly cookie;
an attacker who reads the database cannot replay a session without also
knowing SECRET_KEY (same construction as hashed API keys).

A session carries:
  user      -- {id, username, role, approved} snapshot, or None (anonymous)
  ceremony  -- pending WebAuthn state between a start and a finish call

Anonymous sessions exist only to hold a pending authentication ceremony and
expire after _CEREMONY_TTL_SECONDS. Authenticated sessions live for
session_ttl_seconds (browser-session cookie) or remember_seconds ("remember
me", cookie with max_age).

Sessions are plain values: handlers receive a Session from the dependency in
auth/dependencies.py, mutate it, and call SessionStore.save(). Nothing here
reads ambient request state.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import PendingCeremony, Session, SessionUser
from core.database import create_db_engine

logger = logging.getLogger("enisi.auth.sessions")

SESSION_COOKIE = "enisi_session"

_CEREMONY_TTL_SECONDS = 10 * 60

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, index=True),  # NULL for anonymous ceremony sessions
    Column("data", Text, nullable=False),  # JSON {"user": ..., "ceremony": ...}
    Column("persistent", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(session: Session) -> str:
    return json.dumps(
        {
            "user": session.user.to_dict() if session.user else None,
            "ceremony": session.ceremony.to_dict() if session.ceremony else None,
        }
    )


def _decode(token: str, row) -> Session:
    data = json.loads(row.data)
    user = SessionUser(**data["user"]) if data.get("user") else None
    ceremony = PendingCeremony(**data["ceremony"]) if data.get("ceremony") else None
    return Session(
        token=token,
        user=user,
        ceremony=ceremony,
        persistent=bool(row.persistent),
        expires_at=row.expires_at,
    )


class SessionStore:
    """Repository for server-side sessions.

    Usage:
        store = SessionStore(db_url, secret_key)
        session = store.create(user=SessionUser(...), persistent=False)
        same = store.get(session.token)
        store.delete(session.token)
    """

    def __init__(
        self,
        db_url: str,
        secret_key: str,
        ttl_seconds: int = 12 * 3600,
        remember_seconds: int = 30 * 24 * 3600,
    ) -> None:
        self.engine: Engine = create_db_engine(db_url)
        self._secret = secret_key.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self.remember_seconds = remember_seconds
        _metadata.create_all(self.engine)

    def _hash(self, token: str) -> str:
        return hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def _lifetime(self, user: SessionUser | None, persistent: bool) -> int:
        if user is None:
            return _CEREMONY_TTL_SECONDS
        return self.remember_seconds if persistent else self.ttl_seconds

    def create(
        self,
        user: SessionUser | None = None,
        ceremony: PendingCeremony | None = None,
        persistent: bool = False,
    ) -> Session:
        """Insert a new session under a fresh random token and return it."""
        token = secrets.token_urlsafe(32)
        now = _now()
        expires_at = (now + timedelta(seconds=self._lifetime(user, persistent))).isoformat()
        session = Session(token=token, user=user, ceremony=ceremony, persistent=persistent, expires_at=expires_at)
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_hash=self._hash(token),
                    user_id=user.id if user else None,
                    data=_encode(session),
                    persistent=1 if persistent else 0,
                    created_at=now.isoformat(),
                    expires_at=expires_at,
                )
            )
        return session

    def get(self, token: str | None) -> Session | None:
        """Return the live session for token, or None if unknown or expired."""
        if not token:
            return None
        token_hash = self._hash(token)
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        if row is None:
            return None
        if row.expires_at <= _now().isoformat():
            self.delete(token)
            return None
        return _decode(token, row)

    def save(self, session: Session) -> None:
        """Persist the user snapshot and pending ceremony of session."""
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.token_hash == self._hash(session.token))
                .values(user_id=session.user.id if session.user else None, data=_encode(session))
            )

    def delete(self, token: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token_hash == self._hash(token)))

    def delete_for_user(self, user_id: int) -> int:
        """Drop every session belonging to user_id. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _now().isoformat()))
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, *, max_age: int | None, secure: bool) -> None:
    """Write the session token as an httpOnly cookie.

    max_age=None produces a browser-session cookie that ends when the browser
    closes. samesite is "strict" on secure (HTTPS) deployments and "lax" in
    local development.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="strict" if secure else "lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")


# ---------------------------------------------------------------------------
# Session issuer
# ---------------------------------------------------------------------------


class SessionIssuer:
    """Turns a gate-passed identity snapshot into a usable session.

    issue() always mints a new token. Any previous session presented by the
    browser (an anonymous ceremony session, or a stale login) is deleted, so a
    token planted before login never becomes authenticated.
    """

    def __init__(self, store: SessionStore, secure_cookies: bool = False) -> None:
        self.store = store
        self.secure_cookies = secure_cookies

    def issue(
        self,
        response,
        user: SessionUser,
        *,
        remember: bool = False,
        previous: Session | None = None,
    ) -> Session:
        if previous is not None:
            self.store.delete(previous.token)
        session = self.store.create(user=user, persistent=remember)
        max_age = self.store.remember_seconds if remember else None
        set_session_cookie(response, session.token, max_age=max_age, secure=self.secure_cookies)
        return session

    def begin_anonymous(self, response, ceremony: PendingCeremony | None = None) -> Session:
        """Create an anonymous session to hold a pending ceremony."""
        session = self.store.create(ceremony=ceremony)
        set_session_cookie(response, session.token, max_age=_CEREMONY_TTL_SECONDS, secure=self.secure_cookies)
        return session

    def revoke(self, response, session: Session | None) -> None:
        if session is not None:
            self.store.delete(session.token)
        clear_session_cookie(response)
