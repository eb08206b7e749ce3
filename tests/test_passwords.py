"""Unit tests for auth/passwords.py -- the password authenticator.

Covers:
- bcrypt hash / verify
- legacy plaintext accepted once, then replaced by a bcrypt hash
- case-insensitive login
- Google accounts -> WrongAuthMethod
- unknown user / wrong password -> InvalidCredentials
- bootstrap admin recreated when missing, role self-healed
- approval state is not checked here
"""

import pytest

from auth.errors import InvalidCredentials, WrongAuthMethod
from auth.models import APPROVED, PENDING, PROVIDER_GOOGLE, ROLE_ADMIN, ROLE_USER, Identity
from auth.passwords import authenticate_password, hash_password, is_modern_hash, verify_password
from auth.store import IdentityStore


@pytest.fixture
def store():
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


class TestHashing:
    def test_hash_verifies(self):
        hashed = hash_password("s3cret")
        assert is_modern_hash(hashed)
        assert verify_password("s3cret", hashed)
        assert not verify_password("wrong", hashed)

    def test_garbage_hash_does_not_raise(self):
        assert verify_password("x", "$2b$not-a-hash") is False

    def test_long_password_hashes(self):
        hashed = hash_password("p" * 200)
        assert verify_password("p" * 200, hashed)

    @pytest.mark.parametrize("value", ["secret", "", None, "2b$abc"])
    def test_non_bcrypt_values_are_legacy(self, value):
        assert not is_modern_hash(value)


class TestAuthenticate:
    def test_valid_login_returns_identity(self, store):
        store.create_user(Identity(username="alice", password=hash_password("s3cret"), approved=APPROVED))
        identity = authenticate_password(store, "alice", "s3cret")
        assert identity.username == "alice"

    def test_login_is_case_insensitive(self, store):
        store.create_user(Identity(username="Alice", password=hash_password("s3cret")))
        assert authenticate_password(store, "ALICE", "s3cret").username == "Alice"

    def test_wrong_password(self, store):
        store.create_user(Identity(username="alice", password=hash_password("s3cret")))
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "alice", "nope")

    def test_unknown_user(self, store):
        store.create_user(Identity(username="someone", password=hash_password("x")))
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "ghost", "whatever")

    def test_google_account_must_use_google(self, store):
        store.create_user(Identity(username="g@example.com", password=None, provider=PROVIDER_GOOGLE))
        with pytest.raises(WrongAuthMethod):
            authenticate_password(store, "g@example.com", "anything")

    def test_pending_identity_still_authenticates(self, store):
        store.create_user(Identity(username="newbie", password=hash_password("pw"), approved=PENDING))
        assert authenticate_password(store, "newbie", "pw").approved == PENDING


class TestLegacyUpgrade:
    def test_plaintext_accepted_once_then_rehashed(self, store):
        uid = store.create_user(Identity(username="legacy", password="hunter2", approved=APPROVED))
        authenticate_password(store, "legacy", "hunter2")
        stored = store.get_by_id(uid).password
        assert stored != "hunter2"
        assert is_modern_hash(stored), f"Expected bcrypt hash after upgrade, got {stored!r}"
        # The new hash keeps working.
        authenticate_password(store, "legacy", "hunter2")

    def test_plaintext_mismatch_is_not_upgraded(self, store):
        uid = store.create_user(Identity(username="legacy", password="hunter2"))
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "legacy", "hunter3")
        assert store.get_by_id(uid).password == "hunter2"

    def test_stored_hash_string_is_not_a_password(self, store):
        hashed = hash_password("real")
        store.create_user(Identity(username="h", password=hashed))
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "h", hashed)


class TestBootstrapAdmin:
    def test_missing_admin_is_recreated(self, store):
        store.create_user(Identity(username="someone", password=hash_password("x")))
        identity = authenticate_password(store, "admin", "admin")
        assert identity.role == ROLE_ADMIN
        assert identity.approved == APPROVED

    def test_recreated_admin_still_needs_right_password(self, store):
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "admin", "wrong")
        assert store.get_by_username("admin") is not None

    def test_role_is_self_healed(self, store):
        uid = store.create_user(
            Identity(username="admin", password=hash_password("pw"), approved=APPROVED, role=ROLE_USER)
        )
        identity = authenticate_password(store, "Admin", "pw")
        assert identity.role == ROLE_ADMIN
        assert store.get_by_id(uid).role == ROLE_ADMIN

    def test_other_missing_users_are_not_recreated(self, store):
        with pytest.raises(InvalidCredentials):
            authenticate_password(store, "root", "admin")
        assert store.get_by_username("root") is None

    def test_custom_bootstrap_name(self, store):
        identity = authenticate_password(
            store, "boss", "changeme", bootstrap_username="boss", bootstrap_password="changeme"
        )
        assert identity.role == ROLE_ADMIN
