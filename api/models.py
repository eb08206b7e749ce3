"""
API request and response models for the Enisi authentication endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from audit.models import AuditEntry
from auth.approval import approval_flags
from auth.models import PROVIDER_GOOGLE, Identity, SessionUser, WebAuthnCredential

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_Username = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


class StatusFilterEnum(str, Enum):
    all = "all"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/login. Username is trimmed; both fields must be non-empty."""

    username: _Username
    # Not stripped: surrounding whitespace is part of the password.
    password: str = Field(min_length=1, max_length=1024)
    remember: bool = False


class RegisterRequest(BaseModel):
    """Body for POST /api/register."""

    username: _Username
    password: str = Field(min_length=1, max_length=1024)


class WebAuthnAuthStart(BaseModel):
    """Body for POST /api/webauthn/auth/start."""

    username: _Username


class CredentialRename(BaseModel):
    """Body for PUT /api/webauthn/credentials/{id}. Longer names are truncated to 64."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class RolePatch(BaseModel):
    """Body for PATCH /api/admin/users/{id}."""

    role: RoleEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """The session identity snapshot as the frontend sees it."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    approved: int

    @classmethod
    def from_session_user(cls, user: SessionUser) -> "UserInfo":
        return cls(id=user.id, username=user.username, role=user.role, approved=user.approved)


class LoginResponse(BaseModel):
    """Response for POST /api/login and POST /api/webauthn/auth/finish."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserInfo


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    pending: bool = True


class MeResponse(BaseModel):
    """Response for GET /api/me."""

    model_config = ConfigDict(frozen=True)

    user: UserInfo


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class CredentialResponse(BaseModel):
    """A passkey as listed to its owner. The public key is never returned."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: Optional[str]
    credential_id: str
    transports: list[str]
    counter: int
    created_at: Optional[str]

    @classmethod
    def from_credential(cls, credential: WebAuthnCredential) -> "CredentialResponse":
        return cls(
            id=credential.id,
            name=credential.name,
            credential_id=credential.credential_id,
            transports=credential.transport_list,
            counter=credential.counter,
            created_at=credential.created_at,
        )


class CredentialListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    credentials: list[CredentialResponse]


class CredentialRegisteredResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    id: int
    name: str


class CredentialRenamedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    renamed: bool = True
    name: str


class AdminUserRow(BaseModel):
    """One row of GET /api/admin/users.

    email mirrors username for Google accounts (their username is the
    verified address) and is None for local accounts.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str]
    display_name: Optional[str]
    provider: str
    role: str
    approved: int
    pending: bool
    rejected: bool
    created_at: Optional[str]
    updated_at: Optional[str]
    created_ip: Optional[str]
    last_login_ip: Optional[str]

    @classmethod
    def from_identity(cls, identity: Identity) -> "AdminUserRow":
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.username if identity.provider == PROVIDER_GOOGLE else None,
            display_name=identity.display_name,
            provider=identity.provider,
            role=identity.role,
            approved=identity.approved,
            created_at=identity.created_at,
            updated_at=identity.updated_at,
            created_ip=identity.created_ip,
            last_login_ip=identity.last_login_ip,
            **approval_flags(identity.approved),
        )


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    entity: Optional[str]
    entity_id: Optional[int]
    action: str
    username: str
    info: Optional[str]
    ts: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(**entry.to_dict())


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    database: str = "ok"
    version: str
