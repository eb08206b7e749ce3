"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these classes only own the domain shape.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

# Approval tri-state stored in users.approved
PENDING = 0
APPROVED = 1
REJECTED = -1

ROLE_USER = "user"
ROLE_ADMIN = "admin"

PROVIDER_LOCAL = "local"
PROVIDER_GOOGLE = "google"


def username_key(username: str) -> str:
    """Comparison key for usernames: full Unicode case folding."""
    return username.casefold()


@dataclass
class Identity:
    """A row of the users table.

    password holds a bcrypt hash, a legacy plaintext value awaiting migration,
    or None for Google-only accounts (they have no local password).
    Username comparisons are always case-insensitive; the stored value keeps
    the casing used at registration.
    """

    username: str
    id: int | None = None
    password: str | None = None
    approved: int = PENDING
    provider: str = PROVIDER_LOCAL
    display_name: str | None = None
    role: str = ROLE_USER
    created_at: str | None = None
    updated_at: str | None = None
    created_ip: str | None = None
    last_login_ip: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class WebAuthnCredential:
    """An enrolled passkey. credential_id and public_key are base64url strings."""

    user_id: int
    credential_id: str
    public_key: str
    id: int | None = None
    counter: int = 0
    transports: str | None = None  # comma-joined transport hints
    name: str | None = None
    created_at: str | None = None

    @property
    def transport_list(self) -> list[str]:
        return [t for t in (self.transports or "").split(",") if t]


@dataclass
class SessionUser:
    """The identity snapshot a session carries: {id, username, role, approved}."""

    id: int
    username: str
    role: str
    approved: int

    @classmethod
    def from_identity(cls, identity: Identity, approved: int | None = None) -> SessionUser:
        return cls(
            id=identity.id,
            username=identity.username,
            role=identity.role,
            approved=identity.approved if approved is None else approved,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PendingCeremony:
    """Ephemeral state held between a WebAuthn start and finish call.

    kind is "registration" or "authentication". pending_user is only set for
    authentication, where no authenticated session exists yet.
    """

    kind: str
    challenge: str  # base64url
    rp_id: str
    origin: str
    pending_user: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Session:
    """Server-side session record passed explicitly into request handlers.

    token is the raw value from the browser cookie; only its hash is stored.
    user is None for anonymous sessions that only carry a pending ceremony.
    """

    token: str
    user: SessionUser | None = None
    ceremony: PendingCeremony | None = None
    persistent: bool = False
    expires_at: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None
