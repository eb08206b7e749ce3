"""
api/routes/auth.py -- Password login, registration, logout, identity and Google.

Routes:
  POST /api/login                  -- password login; sets session cookie
  POST /api/register               -- self-service sign-up; pending session
  POST /api/logout                 -- deletes session + cookie
  GET  /api/me                     -- fresh identity (requires approved session)
  GET  /api/auth/providers         -- list enabled federated providers (public)
  GET  /api/auth/google            -- redirect to Google (only when configured)
  GET  /api/auth/google/callback   -- Google callback; gate; redirect to frontend

Security:
  [L1] POST /login counts every attempt against the per-IP limiter before any
       credential check, so a correct password does not reset the count.
  [L2] authenticate_password() performs timing equalization -- use it, never
       inline get_by_username() + verify_password().
  [L3] Every issued session gets a fresh token; a pre-login token presented by
       the browser is deleted (session fixation).
  [L4] Failed login messages do not reveal whether the username exists.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse

from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    UserInfo,
)
from auth.approval import check_approval
from auth.dependencies import client_ip, get_session, require_user
from auth.errors import DuplicateUsername, InvalidCredentials, NotFound
from auth.models import APPROVED, PENDING, PROVIDER_GOOGLE, REJECTED, Identity, Session, SessionUser
from auth.oauth import get_enabled_providers, google_user_info
from auth.passwords import authenticate_password, hash_password

logger = logging.getLogger("enisi.api.auth")

# Auth policy:
# - POST /api/login, /api/register, /api/logout:  public
# - GET  /api/auth/providers, /api/auth/google*:  public
# - GET  /api/me:                                 requires approved session (require_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Password login / registration
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    session: Session | None = Depends(get_session),
) -> LoginResponse:
    """Authenticate with username and password; set the session cookie.

    Raises 429 once the client IP exhausts its window [L1], 401 on bad
    credentials, 400 for Google accounts and 403 {pending, rejected} for
    identities that have not been approved.
    """
    state = request.app.state
    ip = client_ip(request)
    state.rate_limiter.check(ip)  # [L1]

    try:
        identity = authenticate_password(  # [L2]
            state.identities,
            body.username,
            body.password,
            bootstrap_username=state.settings.bootstrap_admin_username,
            bootstrap_password=state.settings.bootstrap_admin_password,
        )
    except InvalidCredentials:
        logger.warning("Failed password login for %r from %s", body.username, ip)  # [L4]
        raise

    check_approval(identity.approved)
    state.identities.update_login_metadata(identity.id, ip)

    user = SessionUser.from_identity(identity)
    state.issuer.issue(response, user, remember=body.remember, previous=session)  # [L3]
    state.audit.record("auth", identity.id, "login", identity.username)
    logger.info("Password login for user id=%s from %s", identity.id, ip)
    return LoginResponse(user=UserInfo.from_session_user(user))


@router.post("/register", response_model=RegisterResponse)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    session: Session | None = Depends(get_session),
) -> RegisterResponse:
    """Create a local identity awaiting approval.

    The caller receives a session carrying approved=0 so GET /api/me can
    report the pending state; it grants nothing else.
    """
    state = request.app.state
    ip = client_ip(request)
    user_id = state.identities.create_user(  # DuplicateUsername -> 409
        Identity(
            username=body.username,
            password=hash_password(body.password),
            approved=PENDING,
            created_ip=ip,
            last_login_ip=ip,
        )
    )
    identity = state.identities.get_by_id(user_id)
    state.issuer.issue(response, SessionUser.from_identity(identity), previous=session)
    state.audit.record("user", user_id, "register", identity.username)
    logger.info("Registered user id=%s (pending approval)", user_id)
    return RegisterResponse()


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    session: Session | None = Depends(get_session),
) -> dict:
    """Delete the server-side session and clear the cookie."""
    state = request.app.state
    state.issuer.revoke(response, session)
    if session is not None and session.user is not None:
        state.audit.record("auth", session.user.id, "logout", session.user.username)
    return {"success": True}


@router.get("/me", response_model=MeResponse)
def me(user: SessionUser = Depends(require_user)) -> MeResponse:
    """Return the caller's identity, re-read from the store on every call."""
    return MeResponse(user=UserInfo.from_session_user(user))


# ---------------------------------------------------------------------------
# Federated login (Google)
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured federated providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


def _frontend_redirect(request: Request, **params: str) -> RedirectResponse:
    url = request.app.state.settings.frontend_url
    return RedirectResponse(f"{url}?{urlencode(params)}", status_code=302)


@router.get("/auth/google")
async def google_login(request: Request):
    """Redirect the browser to Google's authorization page."""
    if not request.app.state.settings.google_enabled:
        raise NotFound("Google login is not configured.")
    client = request.app.state.oauth.create_client("google")
    redirect_uri = str(request.url_for("google_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request, session: Session | None = Depends(get_session)):
    """Handle Google's callback.

    Flow:
      1. Exchange the authorization code (authlib checks the state parameter).
      2. Extract the verified email -- it becomes the username.
      3. First visit creates a pending Google identity; a local account with
         the same username is never taken over.
      4. Stamp login metadata, run the approval gate, issue the session only
         for approved identities, redirect to the frontend.
    """
    state = request.app.state
    if not state.settings.google_enabled:
        raise NotFound("Google login is not configured.")
    client = state.oauth.create_client("google")

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return _frontend_redirect(request, error="google")

    try:
        email, display_name = google_user_info(token)
    except ValueError as exc:
        logger.warning("Google login rejected: %s", exc)
        return _frontend_redirect(request, error="google")

    ip = client_ip(request)
    identity = state.identities.get_by_username(email)
    if identity is None:
        try:
            user_id = state.identities.create_user(
                Identity(
                    username=email,
                    password=None,
                    approved=PENDING,
                    provider=PROVIDER_GOOGLE,
                    display_name=display_name,
                    created_ip=ip,
                    last_login_ip=ip,
                )
            )
            state.audit.record("user", user_id, "register", email, "google")
        except DuplicateUsername:
            # Concurrent first callback for the same address.
            pass
        identity = state.identities.get_by_username(email)
    elif identity.provider != PROVIDER_GOOGLE:
        logger.warning("Google login for %r refused: a local account holds that username", email)
        return _frontend_redirect(request, error="account_exists")

    state.identities.update_login_metadata(identity.id, ip)

    if identity.approved != APPROVED:
        flag = "rejected" if identity.approved == REJECTED else "pending"
        response = _frontend_redirect(request, **{flag: "1"})
        state.issuer.revoke(response, session)
        return response

    response = _frontend_redirect(request, google="1")
    state.issuer.issue(response, SessionUser.from_identity(identity), previous=session)
    state.audit.record("auth", identity.id, "login", identity.username, "google")
    return response
