"""
auth/approval.py -- The approval gate.

A pure predicate over the users.approved tri-state. Every path that turns a
verified identity into a usable session calls check_approval() first:
password login, the Google callback, and every authenticated read (the
approval state is re-read from the store per request, so an administrator's
rejection of a logged-in user takes effect on the next request).

WebAuthn authentication finish is the one exception: the ceremony itself is
the approval evidence (its start step already refused non-approved
identities), so it issues approved=1 directly.
"""

from __future__ import annotations

from auth.errors import Pending, Rejected
from auth.models import APPROVED, REJECTED


def check_approval(approved: int) -> None:
    """Return if approved == 1, else raise Pending (0) or Rejected (-1).

    Unknown values are treated as pending: they are never usable.
    """
    if approved == APPROVED:
        return
    if approved == REJECTED:
        raise Rejected()
    raise Pending()


def approval_flags(approved: int) -> dict[str, bool]:
    """Return the {pending, rejected} pair the frontend polls on."""
    return {"pending": approved not in (APPROVED, REJECTED), "rejected": approved == REJECTED}
