"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session cookie ("enisi_session") is the only credential. Resolution:

  get_session()       cookie -> live server-side Session, or None.
  get_current_user()  Session -> fresh identity snapshot, or None. The users
                      row is re-read on every request, so a deletion, a role
                      change or a revoked approval takes effect immediately
                      instead of whenever the session expires. A changed
                      snapshot is written back to the session.
  require_user()      401 when unauthenticated, 403 {pending, rejected} when
                      the identity is not approved.
  require_admin()     require_user() plus role == "admin".

FastAPI caches dependencies per request, so a handler asking for both the
session and the user triggers a single session lookup.

Failures raise auth.errors exceptions; api/main.py maps them to responses.

Layer rule: no imports from api/ or audit/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.approval import check_approval
from auth.errors import Forbidden, Unauthenticated
from auth.models import ROLE_ADMIN, Session, SessionUser
from auth.sessions import SESSION_COOKIE


def client_ip(request: Request) -> str:
    """Best-effort client address for rate limiting and login metadata.

    First X-Forwarded-For hop when present and TRUST_PROXY_HEADERS is on,
    else the socket peer. The forwarded value is only as trustworthy as the
    proxy in front of the app: a client talking to the app directly can put
    anything there and pick its own rate-limit key. IPv6 loopback and
    IPv4-mapped forms are normalized so one client gets one key.
    """
    forwarded = ""
    if request.app.state.settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    if not ip and request.client:
        ip = request.client.host or ""
    if ip == "::1":
        return "127.0.0.1"
    if ip.startswith("::ffff:"):
        return ip[len("::ffff:") :]
    return ip or "unknown"


def get_session(request: Request) -> Session | None:
    """Return the live session named by the request cookie, if any."""
    return request.app.state.sessions.get(request.cookies.get(SESSION_COOKIE))


def get_current_user(request: Request, session: Session | None = Depends(get_session)) -> SessionUser | None:
    """Return the caller's current identity snapshot, or None.

    A session whose identity no longer exists is treated as anonymous.
    """
    if session is None or session.user is None:
        return None
    identity = request.app.state.identities.get_by_id(session.user.id)
    if identity is None:
        return None
    fresh = SessionUser.from_identity(identity)
    if fresh != session.user:
        session.user = fresh
        request.app.state.sessions.save(session)
    return fresh


def require_user(user: SessionUser | None = Depends(get_current_user)) -> SessionUser:
    """Require an authenticated, approved identity.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: SessionUser = Depends(require_user)): ...
    """
    if user is None:
        raise Unauthenticated()
    check_approval(user.approved)
    return user


def require_admin(user: SessionUser = Depends(require_user)) -> SessionUser:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    if user.role != ROLE_ADMIN:
        raise Forbidden("Admin access required.")
    return user
