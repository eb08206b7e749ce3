"""
api/routes/webauthn.py -- Passkey ceremonies and credential management.

Routes:
  POST   /api/webauthn/register/start     -- registration options (approved session)
  POST   /api/webauthn/register/finish    -- verify attestation, enroll credential
  POST   /api/webauthn/auth/start         -- assertion options for {username} (public)
  POST   /api/webauthn/auth/finish        -- verify assertion, issue session
  GET    /api/webauthn/credentials        -- caller's credentials
  PUT    /api/webauthn/credentials/{id}   -- rename (owner or admin)
  DELETE /api/webauthn/credentials/{id}   -- delete (owner or admin)

Ceremony state lives in the server-side session between start and finish.
auth/start works without a prior session: an anonymous ceremony session is
created for it, and auth/finish replaces that session with a fresh
authenticated one.

Finish bodies are the browser's PublicKeyCredential serialized as JSON
(base64url fields), passed through to py_webauthn as-is.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request, Response

from api.models import (
    CredentialListResponse,
    CredentialRegisteredResponse,
    CredentialRename,
    CredentialRenamedResponse,
    CredentialResponse,
    LoginResponse,
    UserInfo,
    WebAuthnAuthStart,
)
from auth.dependencies import client_ip, get_session, require_user
from auth.models import Session, SessionUser

# Auth policy:
# - register/*, credentials*:  requires approved session (require_user)
# - auth/start:                public
# - auth/finish:               requires the pending ceremony from auth/start
router = APIRouter(prefix="/webauthn")

_CREDENTIAL_ENTITY = "webauthn_credential"


# ---------------------------------------------------------------------------
# Registration ceremony
# ---------------------------------------------------------------------------


@router.post("/register/start")
def register_start(
    request: Request,
    user: SessionUser = Depends(require_user),
    session: Session = Depends(get_session),
) -> dict:
    return request.app.state.ceremonies.start_registration(session, request.headers.get("origin"))


@router.post("/register/finish", response_model=CredentialRegisteredResponse)
def register_finish(
    request: Request,
    body: dict = Body(...),
    user: SessionUser = Depends(require_user),
    session: Session = Depends(get_session),
) -> CredentialRegisteredResponse:
    credential = request.app.state.ceremonies.finish_registration(session, body)
    request.app.state.audit.record(
        _CREDENTIAL_ENTITY, credential.id, "webauthn_register", user.username, f"user_id={user.id}"
    )
    return CredentialRegisteredResponse(id=credential.id, name=credential.name)


# ---------------------------------------------------------------------------
# Authentication ceremony
# ---------------------------------------------------------------------------


@router.post("/auth/start")
def auth_start(
    request: Request,
    response: Response,
    body: WebAuthnAuthStart,
    session: Session | None = Depends(get_session),
) -> dict:
    """Issue assertion options for the named identity.

    404 unknown username, 403 {pending, rejected} not approved, 400 no
    enrolled credentials.
    """
    state = request.app.state
    target = state.ceremonies.authentication_target(body.username)
    # The anonymous ceremony session is only opened for a valid target.
    if session is None:
        session = state.issuer.begin_anonymous(response)
    return state.ceremonies.start_authentication(session, target, request.headers.get("origin"))


@router.post("/auth/finish", response_model=LoginResponse)
def auth_finish(
    request: Request,
    response: Response,
    body: dict = Body(...),
    session: Session | None = Depends(get_session),
) -> LoginResponse:
    state = request.app.state
    user = state.ceremonies.finish_authentication(session, body)
    state.identities.update_login_metadata(user.id, client_ip(request))
    state.issuer.issue(response, user, previous=session)
    state.audit.record("auth", user.id, "login", user.username, "webauthn")
    return LoginResponse(user=UserInfo.from_session_user(user))


# ---------------------------------------------------------------------------
# Credential management
# ---------------------------------------------------------------------------


@router.get("/credentials", response_model=CredentialListResponse)
def list_credentials(request: Request, user: SessionUser = Depends(require_user)) -> CredentialListResponse:
    credentials = request.app.state.ceremonies.list_credentials(user)
    return CredentialListResponse(credentials=[CredentialResponse.from_credential(c) for c in credentials])


@router.put("/credentials/{credential_id}", response_model=CredentialRenamedResponse)
def rename_credential(
    request: Request,
    credential_id: int,
    body: CredentialRename,
    user: SessionUser = Depends(require_user),
) -> CredentialRenamedResponse:
    credential = request.app.state.ceremonies.rename_credential(user, credential_id, body.name)
    request.app.state.audit.record(
        _CREDENTIAL_ENTITY, credential.id, "rename", user.username, f"user_id={credential.user_id}"
    )
    return CredentialRenamedResponse(name=credential.name)


@router.delete("/credentials/{credential_id}")
def delete_credential(
    request: Request,
    credential_id: int,
    user: SessionUser = Depends(require_user),
) -> dict:
    credential = request.app.state.ceremonies.delete_credential(user, credential_id)
    request.app.state.audit.record(
        _CREDENTIAL_ENTITY, credential.id, "delete", user.username, f"user_id={credential.user_id}"
    )
    return {"deleted": True}
