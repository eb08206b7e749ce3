"""
tests/conftest.py -- Shared test fixtures for Enisi tests.

This module provides:
  - memory_url(): a named shared-memory SQLite URL, unique per call
  - make_settings(): Settings pointing at such a URL, no .env involvement
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - client: TestClient over the real app with a fresh database per test
  - SoftAuthenticator: an in-process WebAuthn authenticator (EC P-256,
    "none" attestation) producing real attestation and assertion payloads

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import secrets
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from api.main import app, close_state, init_state
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

# ---------------------------------------------------------------------------
# Settings / store helpers
# ---------------------------------------------------------------------------


def memory_url(prefix: str = "enisi") -> str:
    """Return a fresh named shared-memory SQLite URL."""
    return f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Build Settings for tests; .env files and production defaults never apply."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": memory_url(),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires services built from the test settings into app.state so TestClient
    routes see an isolated in-memory database. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        close_state(app)

    return test_lifespan


def start_client(settings: Settings | None = None, **kwargs) -> TestClient:
    app.router.lifespan_context = _patch_lifespan(settings or make_settings())
    return TestClient(app, raise_server_exceptions=True, **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """TestClient over the real app; fresh database with only the bootstrap admin."""
    with start_client(follow_redirects=False) as c:
        yield c


def login(client: TestClient, username: str, password: str, remember: bool = False):
    return client.post("/api/login", json={"username": username, "password": password, "remember": remember})


def register(client: TestClient, username: str, password: str):
    return client.post("/api/register", json={"username": username, "password": password})


def login_admin(client: TestClient) -> None:
    resp = login(client, "admin", "admin")
    assert resp.status_code == 200, f"Bootstrap admin login failed: {resp.text}"


def approved_user(client: TestClient, username: str, password: str) -> int:
    """Register username, approve it as admin, and leave the client logged in as it."""
    client.cookies.clear()
    assert register(client, username, password).status_code == 200
    client.cookies.clear()
    login_admin(client)
    user_id = next(u["id"] for u in client.get("/api/admin/users").json() if u["username"] == username)
    assert client.post(f"/api/admin/users/{user_id}/approve").status_code == 200
    client.cookies.clear()
    resp = login(client, username, password)
    assert resp.status_code == 200, f"Login after approval failed: {resp.text}"
    return user_id


# ---------------------------------------------------------------------------
# Software WebAuthn authenticator
# ---------------------------------------------------------------------------


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class SoftAuthenticator:
    """A platform authenticator in software: ES256 key, "none" attestation.

    register() answers PublicKeyCredentialCreationOptions JSON, assert_()
    answers PublicKeyCredentialRequestOptions JSON. Both return the JSON the
    browser would POST to the finish endpoints.
    """

    # authenticator data flags
    _UP_UV_AT = 0x45
    _UP_UV = 0x05

    def __init__(self, rp_id: str = "localhost", origin: str = "http://localhost:3000") -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = secrets.token_bytes(16)
        self.sign_count = 0

    @property
    def credential_id_b64(self) -> str:
        return b64url(self.credential_id)

    def _rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()

    def _cose_public_key(self) -> bytes:
        numbers = self.private_key.public_key().public_numbers()
        return cbor2.dumps(
            {1: 2, 3: -7, -1: 1, -2: numbers.x.to_bytes(32, "big"), -3: numbers.y.to_bytes(32, "big")}
        )

    def _client_data(self, ceremony_type: str, challenge: str) -> bytes:
        return json.dumps(
            {"type": ceremony_type, "challenge": challenge, "origin": self.origin, "crossOrigin": False}
        ).encode("utf-8")

    def register(self, options: dict, transports: list[str] | None = None) -> dict:
        client_data = self._client_data("webauthn.create", options["challenge"])
        auth_data = (
            self._rp_id_hash()
            + bytes([self._UP_UV_AT])
            + self.sign_count.to_bytes(4, "big")
            + bytes(16)  # AAGUID
            + len(self.credential_id).to_bytes(2, "big")
            + self.credential_id
            + self._cose_public_key()
        )
        attestation = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url(client_data),
                "attestationObject": b64url(attestation),
                "transports": transports if transports is not None else ["internal", "hybrid"],
            },
            "clientExtensionResults": {},
        }

    def assert_(self, options: dict, sign_count: int | None = None) -> dict:
        """Sign the challenge. sign_count overrides the next counter value."""
        self.sign_count = self.sign_count + 1 if sign_count is None else sign_count
        client_data = self._client_data("webauthn.get", options["challenge"])
        auth_data = self._rp_id_hash() + bytes([self._UP_UV]) + self.sign_count.to_bytes(4, "big")
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url(client_data),
                "authenticatorData": b64url(auth_data),
                "signature": b64url(signature),
            },
            "clientExtensionResults": {},
        }


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator()
