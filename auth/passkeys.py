"""
auth/passkeys.py -- WebAuthn ceremony manager (py_webauthn).

Two independent two-phase ceremonies, each a start/finish pair bound together
by the pending state stored in the caller's Session:

  Registration    start  -- approved, authenticated caller only. Fresh
                            challenge, existing credential ids excluded.
                  finish -- verify attestation against the stored challenge
                            and RP context (user verification required), then
                            store the credential as "Credential #N".

  Authentication  start  -- by username, no prior session needed. Identity
                            must exist, be approved and have credentials.
                            The pending state records the identity -- it is
                            the only identity binding until finish succeeds.
                  finish -- look the credential up among the pending user's
                            own credentials, verify the assertion, persist the
                            new counter, return the session user (approved=1).

A second start on the same session overwrites the first. Finish always
consumes the pending state, success or failure, so a challenge can be
answered at most once.

Signature counter: the stored counter is handed to the verifier, which
rejects an assertion whose counter does not increase (either side non-zero).
That is the cloned-authenticator defence; authenticators that always report
0 keep working.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
import logging

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.approval import check_approval
from auth.errors import Forbidden, NoCredentials, NotFound, UnknownCredential, VerificationFailed
from auth.models import APPROVED, Identity, PendingCeremony, Session, SessionUser, WebAuthnCredential
from auth.relying_party import RelyingPartyStrategy
from auth.sessions import SessionStore
from auth.store import IdentityStore

logger = logging.getLogger("enisi.auth.webauthn")

REGISTRATION = "registration"
AUTHENTICATION = "authentication"

CREDENTIAL_NAME_MAX = 64

# Malformed client payloads surface from the parser as plain ValueError /
# KeyError / TypeError rather than WebAuthnException.
_VERIFY_ERRORS = (WebAuthnException, ValueError, KeyError, TypeError)


class CeremonyManager:
    """Runs WebAuthn ceremonies against the identity store.

    Usage:
        manager = CeremonyManager(identities, sessions, StaticRelyingParty("localhost", "http://localhost:3000"))
        options = manager.start_registration(session, origin_header=None)
        credential = manager.finish_registration(session, browser_response)
    """

    def __init__(
        self,
        identities: IdentityStore,
        sessions: SessionStore,
        relying_party: RelyingPartyStrategy,
        rp_name: str = "Enisi",
        timeout_ms: int = 60000,
    ) -> None:
        self.identities = identities
        self.sessions = sessions
        self.relying_party = relying_party
        self.rp_name = rp_name
        self.timeout_ms = timeout_ms

    # ------------------------------------------------------------------
    # Pending state
    # ------------------------------------------------------------------

    def _remember(self, session: Session, ceremony: PendingCeremony) -> None:
        session.ceremony = ceremony
        self.sessions.save(session)

    def _consume(self, session: Session | None, kind: str) -> PendingCeremony:
        """Pop the pending ceremony from session; it must be of the given kind."""
        ceremony = session.ceremony if session is not None else None
        if ceremony is None:
            raise VerificationFailed("No ceremony in progress.")
        session.ceremony = None
        self.sessions.save(session)
        if ceremony.kind != kind:
            raise VerificationFailed("No ceremony in progress.")
        return ceremony

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def start_registration(self, session: Session, origin_header: str | None = None) -> dict:
        """Issue registration options for the session's (approved) user."""
        user = session.user
        context = self.relying_party.resolve(origin_header)
        existing = self.identities.list_credentials(user.id)
        options = generate_registration_options(
            rp_id=context.rp_id,
            rp_name=self.rp_name,
            user_id=str(user.id).encode("utf-8"),
            user_name=user.username,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id)) for c in existing
            ],
        )
        self._remember(
            session,
            PendingCeremony(
                kind=REGISTRATION,
                challenge=bytes_to_base64url(options.challenge),
                rp_id=context.rp_id,
                origin=context.origin,
            ),
        )
        return json.loads(options_to_json(options))

    def finish_registration(self, session: Session, response: dict) -> WebAuthnCredential:
        """Verify an attestation response and enroll the credential."""
        ceremony = self._consume(session, REGISTRATION)
        user = session.user
        try:
            credential = parse_registration_credential_json(response)
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(ceremony.challenge),
                expected_origin=ceremony.origin,
                expected_rp_id=ceremony.rp_id,
                require_user_verification=True,
            )
        except _VERIFY_ERRORS as exc:
            logger.warning("WebAuthn registration failed for user id=%s: %s", user.id, exc)
            raise VerificationFailed() from exc

        transports = (response.get("response") or {}).get("transports") or response.get("transports") or []
        name = f"Credential #{self.identities.count_credentials(user.id) + 1}"
        record = WebAuthnCredential(
            user_id=user.id,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=bytes_to_base64url(verification.credential_public_key),
            counter=verification.sign_count,
            transports=",".join(str(t) for t in transports) or None,
            name=name,
        )
        record.id = self.identities.add_credential(record)
        logger.info("Enrolled WebAuthn credential %r for user id=%s", name, user.id)
        return record

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authentication_target(self, username: str) -> tuple[Identity, list[WebAuthnCredential]]:
        """Resolve who a passkey login is for, before any state is written.

        Raises NotFound, NotApproved or NoCredentials.
        """
        identity = self.identities.get_by_username(username)
        if identity is None:
            raise NotFound("User not found.")
        check_approval(identity.approved)
        credentials = self.identities.list_credentials(identity.id)
        if not credentials:
            raise NoCredentials()
        return identity, credentials

    def start_authentication(
        self,
        session: Session,
        target: tuple[Identity, list[WebAuthnCredential]],
        origin_header: str | None = None,
    ) -> dict:
        """Issue assertion options restricted to the target identity's credentials."""
        identity, credentials = target
        context = self.relying_party.resolve(origin_header)
        options = generate_authentication_options(
            rp_id=context.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id)) for c in credentials
            ],
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        self._remember(
            session,
            PendingCeremony(
                kind=AUTHENTICATION,
                challenge=bytes_to_base64url(options.challenge),
                rp_id=context.rp_id,
                origin=context.origin,
                pending_user={"id": identity.id, "username": identity.username, "role": identity.role},
            ),
        )
        return json.loads(options_to_json(options))

    def finish_authentication(self, session: Session | None, response: dict) -> SessionUser:
        """Verify an assertion and return the user to issue a session for.

        The returned snapshot always carries approved=1: a successful ceremony
        is itself the approval evidence.
        """
        ceremony = self._consume(session, AUTHENTICATION)
        pending = ceremony.pending_user
        if not pending:
            raise VerificationFailed("No user context.")

        try:
            raw_id = bytes_to_base64url(base64url_to_bytes(response["rawId"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise UnknownCredential() from exc
        stored = self.identities.get_credential_by_credential_id(raw_id)
        if stored is None or stored.user_id != pending["id"]:
            logger.warning("WebAuthn assertion with unknown credential for user id=%s", pending["id"])
            raise UnknownCredential()

        try:
            credential = parse_authentication_credential_json(response)
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(ceremony.challenge),
                expected_rp_id=ceremony.rp_id,
                expected_origin=ceremony.origin,
                credential_public_key=base64url_to_bytes(stored.public_key),
                credential_current_sign_count=stored.counter,
                require_user_verification=True,
            )
        except _VERIFY_ERRORS as exc:
            logger.warning("WebAuthn authentication failed for user id=%s: %s", pending["id"], exc)
            raise VerificationFailed() from exc

        self.identities.update_credential_counter(stored.id, verification.new_sign_count)

        identity = self.identities.get_by_id(pending["id"])
        if identity is None:
            raise NotFound("User not found.")
        return SessionUser.from_identity(identity, approved=APPROVED)

    # ------------------------------------------------------------------
    # Credential management (outside the ceremonies)
    # ------------------------------------------------------------------

    def list_credentials(self, actor: SessionUser) -> list[WebAuthnCredential]:
        return self.identities.list_credentials(actor.id)

    def _owned(self, actor: SessionUser, row_id: int) -> WebAuthnCredential:
        credential = self.identities.get_credential(row_id)
        if credential is None:
            raise NotFound("Credential not found.")
        if credential.user_id != actor.id and actor.role != "admin":
            raise Forbidden()
        return credential

    def rename_credential(self, actor: SessionUser, row_id: int, name: str) -> WebAuthnCredential:
        credential = self._owned(actor, row_id)
        credential.name = name.strip()[:CREDENTIAL_NAME_MAX]
        self.identities.rename_credential(row_id, credential.name)
        return credential

    def delete_credential(self, actor: SessionUser, row_id: int) -> WebAuthnCredential:
        credential = self._owned(actor, row_id)
        self.identities.delete_credential(row_id)
        return credential
