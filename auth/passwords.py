"""
auth/passwords.py -- Password hashing and the password authenticator.

Security design decisions:
  Hashing: bcrypt directly (no passlib wrapper). passlib's wrap-bug detection
       builds a password longer than 72 bytes, which bcrypt 4.x rejects.

  Legacy credentials: early accounts stored plaintext passwords. A stored
       value that does not look like a bcrypt hash is compared once, in
       constant time, and on a match immediately replaced by a fresh bcrypt
       hash. After that the plaintext path can never accept the identity
       again because the stored value is now a hash.

  Timing equalization [C1]: unknown usernames still run one bcrypt check
       against _DUMMY_HASH so response time does not reveal which usernames
       exist.

  Bootstrap admin: if the configured bootstrap username has no identity at
       login time, a default administrator is recreated. This is a one-off
       self-healing rule for that single name, not a general "recreate missing
       identities" capability.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

import bcrypt

from auth.errors import DuplicateUsername, InvalidCredentials, WrongAuthMethod
from auth.models import APPROVED, PROVIDER_GOOGLE, PROVIDER_LOCAL, ROLE_ADMIN, Identity, username_key

if TYPE_CHECKING:
    from auth.store import IdentityStore

logger = logging.getLogger("enisi.auth")

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def _secret(plain: str) -> bytes:
    # bcrypt only reads 72 bytes; bcrypt 5 raises instead of truncating.
    return plain.encode("utf-8")[:72]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_secret(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_secret(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


def is_modern_hash(stored: str | None) -> bool:
    return bool(stored) and stored.startswith(_BCRYPT_PREFIXES)


_DUMMY_HASH: str = hash_password("enisi_timing_dummy")


def _matches_stored(password: str, stored: str | None) -> tuple[bool, bool]:
    """Compare password against a stored credential.

    Returns (valid, needs_upgrade). needs_upgrade is True only when a legacy
    plaintext value matched.
    """
    if stored is None:
        verify_password(password, _DUMMY_HASH)
        return False, False
    if is_modern_hash(stored):
        return verify_password(password, stored), False
    verify_password(password, _DUMMY_HASH)
    valid = hmac.compare_digest(stored.encode("utf-8"), password.encode("utf-8"))
    return valid, valid


def _recreate_bootstrap_admin(store: IdentityStore, username: str, default_password: str) -> Identity | None:
    logger.warning("Bootstrap admin %r missing at login -- recreating default administrator", username)
    try:
        store.create_user(
            Identity(
                username=username,
                password=hash_password(default_password),
                approved=APPROVED,
                role=ROLE_ADMIN,
                provider=PROVIDER_LOCAL,
            )
        )
    except DuplicateUsername:
        # A concurrent login recreated it first.
        pass
    return store.get_by_username(username)


def authenticate_password(
    store: IdentityStore,
    username: str,
    password: str,
    *,
    bootstrap_username: str = "admin",
    bootstrap_password: str = "admin",
) -> Identity:
    """Verify a username/password pair and return the matching Identity.

    Does not look at approval state -- that is the approval gate's job, run
    by the caller after this returns.

    Raises:
        WrongAuthMethod: the identity is a Google-only account.
        InvalidCredentials: unknown username or wrong password.
    """
    identity = store.get_by_username(username)
    is_bootstrap = username_key(username) == username_key(bootstrap_username)
    if identity is None and is_bootstrap:
        identity = _recreate_bootstrap_admin(store, bootstrap_username, bootstrap_password)

    if identity is None:
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()

    if identity.provider == PROVIDER_GOOGLE:
        raise WrongAuthMethod()

    valid, needs_upgrade = _matches_stored(password, identity.password)
    if not valid:
        raise InvalidCredentials()

    if needs_upgrade:
        store.update_password(identity.id, hash_password(password))
        logger.info("Upgraded legacy plaintext password to bcrypt for user id=%s", identity.id)

    if is_bootstrap and identity.role != ROLE_ADMIN:
        store.set_role(identity.id, ROLE_ADMIN)
        logger.warning("Restored admin role on bootstrap account id=%s", identity.id)

    return store.get_by_id(identity.id) or identity
