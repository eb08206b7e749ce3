"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and passkeys.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity / _row_to_credential are the mappers. Route and service code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Username uniqueness is case-insensitive: username_key holds the Python
  casefold() of the name and carries the UNIQUE constraint, and every lookup
  compares username_key = :name.casefold(). SQL lower() is not used because
  SQLite folds only ASCII ("Ëndrit" and "ëndrit" must collide). "Admin" and
  "admin" are the same identity.

  Storage errors never leak: a unique violation on username becomes
  DuplicateUsername, on credential_id becomes VerificationFailed.

Every mutating method touches one aggregate; the only multi-row write is
delete_user, which removes the identity and its credentials in one
transaction (ON DELETE CASCADE covers the same rows when the backend enforces
foreign keys).

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateUsername, VerificationFailed
from auth.models import (
    APPROVED,
    PENDING,
    PROVIDER_LOCAL,
    REJECTED,
    ROLE_ADMIN,
    Identity,
    WebAuthnCredential,
    username_key,
)
from core.database import create_db_engine, is_unique_violation

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("username_key", String(255), nullable=False, unique=True),
    Column("password", Text),  # bcrypt hash, legacy plaintext, or NULL (Google)
    Column("approved", Integer, nullable=False, server_default=str(PENDING)),
    Column("provider", String(30), nullable=False, server_default=PROVIDER_LOCAL),
    Column("display_name", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("created_ip", String(64)),
    Column("last_login_ip", String(64)),
)

_credentials = Table(
    "webauthn_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("credential_id", Text, nullable=False, unique=True),  # base64url
    Column("public_key", Text, nullable=False),  # base64url COSE key
    Column("counter", Integer, nullable=False, server_default="0"),
    Column("transports", Text),
    Column("name", String(64)),
    Column("created_at", String(32), nullable=False),
)

_APPROVAL_FILTERS: dict[str, int] = {
    "pending": PENDING,
    "approved": APPROVED,
    "rejected": REJECTED,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity and WebAuthnCredential entities.

    Usage:
        store = IdentityStore("sqlite:///enisi.db")
        uid = store.create_user(Identity(username="alice", password=hash_password("secret1")))
        identity = store.get_by_username("ALICE")   # same row
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_db_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, identity: Identity) -> int:
        """Insert a new identity and return its id.

        Raises DuplicateUsername when the name collides case-insensitively with
        an existing identity.
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=identity.username,
                        username_key=username_key(identity.username),
                        password=identity.password,
                        approved=identity.approved,
                        provider=identity.provider,
                        display_name=identity.display_name,
                        role=identity.role,
                        created_at=now,
                        updated_at=now,
                        created_ip=identity.created_ip,
                        last_login_ip=identity.last_login_ip,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateUsername() from exc
            raise

    def get_by_username(self, username: str) -> Identity | None:
        """Look up an identity ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(_users.c.username_key == username_key(username))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_users(self, status: str | None = None) -> list[Identity]:
        """Return identities newest first, optionally filtered by approval status.

        status is one of "pending", "approved", "rejected"; anything else
        (including "all" and None) returns every identity.
        """
        query = _users.select().order_by(_users.c.id.desc())
        if status in _APPROVAL_FILTERS:
            query = query.where(_users.c.approved == _APPROVAL_FILTERS[status])
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_identity(r) for r in rows]

    def count_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == ROLE_ADMIN)
            ).scalar()
        return result or 0

    def _update(self, user_id: int, **values) -> bool:
        values["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def update_password(self, user_id: int, password_hash: str) -> bool:
        return self._update(user_id, password=password_hash)

    def set_approval(self, user_id: int, approved: int) -> bool:
        """Set approval state (1 approved, 0 pending, -1 rejected)."""
        if approved not in (APPROVED, PENDING, REJECTED):
            raise ValueError(f"Invalid approval state: {approved!r}")
        return self._update(user_id, approved=approved)

    def set_role(self, user_id: int, role: str) -> bool:
        return self._update(user_id, role=role)

    def update_login_metadata(self, user_id: int, ip: str | None) -> bool:
        """Stamp last_login_ip and updated_at; fill created_ip if still empty."""
        identity = self.get_by_id(user_id)
        if identity is None:
            return False
        values: dict = {"last_login_ip": ip}
        if identity.created_ip is None:
            values["created_ip"] = ip
        return self._update(user_id, **values)

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete an identity and every credential it owns.

        Returns True if deleted, False if not found. Last-admin and self-delete
        checks are the caller's responsibility (admin-only route).
        """
        with self.engine.begin() as conn:
            conn.execute(_credentials.delete().where(_credentials.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def ensure_bootstrap_admin(self, username: str, password_hash: str) -> int | None:
        """Seed the first administrator when the users table is empty.

        Returns the new id, or None if any identity already exists.
        """
        if self.has_users():
            return None
        return self.create_user(
            Identity(
                username=username,
                password=password_hash,
                approved=APPROVED,
                role=ROLE_ADMIN,
                provider=PROVIDER_LOCAL,
            )
        )

    # ------------------------------------------------------------------
    # WebAuthn credentials
    # ------------------------------------------------------------------

    def list_credentials(self, user_id: int) -> list[WebAuthnCredential]:
        """Return a user's credentials, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select().where(_credentials.c.user_id == user_id).order_by(_credentials.c.id.desc())
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def count_credentials(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_credentials).where(_credentials.c.user_id == user_id)
            ).scalar()
        return result or 0

    def get_credential(self, row_id: int) -> WebAuthnCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.id == row_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_credential_by_credential_id(self, credential_id: str) -> WebAuthnCredential | None:
        """Look up a credential by its authenticator-assigned id (base64url)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(_credentials.c.credential_id == credential_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def add_credential(self, credential: WebAuthnCredential) -> int:
        """Insert a newly registered credential and return its row id.

        Raises VerificationFailed if the authenticator's credential id is
        already enrolled (credential_id is globally unique).
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _credentials.insert().values(
                        user_id=credential.user_id,
                        credential_id=credential.credential_id,
                        public_key=credential.public_key,
                        counter=credential.counter,
                        transports=credential.transports,
                        name=credential.name,
                        created_at=_now_iso(),
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise VerificationFailed("Credential already registered.") from exc
            raise

    def update_credential_counter(self, row_id: int, counter: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_credentials.update().where(_credentials.c.id == row_id).values(counter=counter))
        return result.rowcount > 0

    def rename_credential(self, row_id: int, name: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_credentials.update().where(_credentials.c.id == row_id).values(name=name))
        return result.rowcount > 0

    def delete_credential(self, row_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_credentials.delete().where(_credentials.c.id == row_id))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        password=row.password,
        approved=row.approved,
        provider=row.provider,
        display_name=row.display_name,
        role=row.role,
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_ip=row.created_ip,
        last_login_ip=row.last_login_ip,
    )


def _row_to_credential(row) -> WebAuthnCredential:
    return WebAuthnCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        counter=row.counter,
        transports=row.transports,
        name=row.name,
        created_at=row.created_at,
    )
