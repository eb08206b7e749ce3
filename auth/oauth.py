"""
auth/oauth.py -- Authlib Google OAuth configuration.

Google is the only external provider. It is registered only when both
GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are configured; otherwise the
/api/auth/google routes answer 404 and get_enabled_providers() is empty.

Security notes:
  Email verification is mandatory. google_user_info() raises ValueError when
  Google does not confirm the address is verified: the email becomes the
  username, so an unverified address could claim someone else's account.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. That cookie only carries OAuth state; the Enisi session
  itself lives server-side (auth/sessions.py).

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("enisi.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with Google registered when configured."""
    oauth = OAuth()
    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for each configured external provider."""
    if settings.google_enabled:
        return [{"name": "google", "label": "Google"}]
    return []


def google_user_info(token: dict) -> tuple[str, str | None]:
    """Extract (email, display_name) from a Google token response.

    The email claim is only accepted when email_verified is true; a missing
    email_verified claim counts as unverified.

    Raises:
        ValueError: If there is no verified email.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("Google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError("Google OAuth: email is not verified.")

    email = userinfo.get("email")
    if not email:
        raise ValueError("Google OAuth: missing email claim in userinfo")

    return email.strip().lower(), userinfo.get("name") or None
