"""
auth/relying_party.py -- WebAuthn relying-party context strategies.

A ceremony is bound to an RP ID (domain) and an expected origin. Two
strategies produce them:

  StaticRelyingParty        -- fixed RP_ID / RP_ORIGIN from configuration.
                               The only strategy a production deployment uses.
  HeaderDerivedRelyingParty -- trusts the request's Origin header when it is an
                               https:// URL (development tunnels such as ngrok),
                               falling back to the static values otherwise.

build_relying_party() only returns the header-derived variant when
ALLOW_DYNAMIC_RP is set, and core.config refuses that flag unless DEBUG is
also set, so the header path cannot be reached in a production trust
boundary.

The resolved context is stored in the session at ceremony start and read
back at finish; finish never re-derives it from the second request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

logger = logging.getLogger("enisi.auth.webauthn")


@dataclass(frozen=True)
class RelyingPartyContext:
    rp_id: str
    origin: str


class RelyingPartyStrategy(Protocol):
    def resolve(self, origin_header: str | None) -> RelyingPartyContext: ...


class StaticRelyingParty:
    def __init__(self, rp_id: str, origin: str) -> None:
        self._context = RelyingPartyContext(rp_id=rp_id, origin=origin)

    def resolve(self, origin_header: str | None) -> RelyingPartyContext:
        return self._context


class HeaderDerivedRelyingParty:
    """Derive the RP from an https Origin header. Development only."""

    def __init__(self, fallback: StaticRelyingParty) -> None:
        self._fallback = fallback

    def resolve(self, origin_header: str | None) -> RelyingPartyContext:
        if origin_header:
            parsed = urlparse(origin_header)
            if parsed.scheme == "https" and parsed.hostname:
                origin = f"{parsed.scheme}://{parsed.netloc}"
                return RelyingPartyContext(rp_id=parsed.hostname, origin=origin)
        return self._fallback.resolve(origin_header)


def build_relying_party(settings) -> RelyingPartyStrategy:
    """Pick the strategy for these settings."""
    static = StaticRelyingParty(settings.rp_id, settings.rp_origin)
    if settings.allow_dynamic_rp:
        if not settings.debug:
            raise ValueError("Header-derived relying party requires DEBUG=true.")
        logger.warning("ALLOW_DYNAMIC_RP enabled: WebAuthn RP derived from https Origin headers (development only)")
        return HeaderDerivedRelyingParty(static)
    return static
