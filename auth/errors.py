"""
auth/errors.py -- Error taxonomy of the authentication core.

Every failure the core can surface is one of these exceptions. Each carries a
machine-readable code and the HTTP status the API layer maps it to, so route
handlers never translate error kinds by hand; api/main.py registers a single
exception handler for AuthError.

Layer rule: no framework imports. These are plain exceptions.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses override code, status_code and message."""

    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message

    def payload(self) -> dict:
        """Extra top-level fields merged into the error response body."""
        return {}


class Unauthenticated(AuthError):
    code = "unauthenticated"
    status_code = 401
    message = "Authentication required."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid credentials."


class WrongAuthMethod(AuthError):
    code = "wrong_auth_method"
    status_code = 400
    message = "Use Google login for this account."


class TooManyAttempts(AuthError):
    code = "too_many_attempts"
    status_code = 429
    message = "Too many attempts, try later."

    def __init__(self, retry_after: int = 0, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DuplicateUsername(AuthError):
    code = "duplicate_username"
    status_code = 409
    message = "Username already exists."


class NotApproved(AuthError):
    """Identity exists and authenticated, but approval state is not 1."""

    status_code = 403
    pending = False
    rejected = False

    def payload(self) -> dict:
        return {"pending": self.pending, "rejected": self.rejected}


class Pending(NotApproved):
    code = "pending"
    message = "Account is awaiting administrator approval."
    pending = True


class Rejected(NotApproved):
    code = "rejected"
    message = "Account has been rejected."
    rejected = True


class VerificationFailed(AuthError):
    code = "verification_failed"
    status_code = 400
    message = "WebAuthn verification failed."


class UnknownCredential(AuthError):
    code = "unknown_credential"
    status_code = 400
    message = "Unknown credential."


class NoCredentials(AuthError):
    code = "no_credentials"
    status_code = 400
    message = "No credentials enrolled."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "Forbidden."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Not found."
