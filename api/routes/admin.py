"""
api/routes/admin.py -- Identity administration and audit browsing (admin only).

Routes:
  GET    /api/admin/users                -- list identities (?status=pending|approved|rejected|all)
  POST   /api/admin/users/{id}/approve   -- approved = 1
  POST   /api/admin/users/{id}/reject    -- approved = -1
  PATCH  /api/admin/users/{id}           -- change role
  DELETE /api/admin/users/{id}           -- delete identity + credentials + sessions
  GET    /api/admin/audit                -- query the audit trail

Security:
  [A1] An administrator cannot delete or reject their own account.
  [A2] The last administrator cannot be demoted (no recovery path without
       database access).
  Approval changes take effect on the target's next request: sessions carry a
  snapshot, but auth/dependencies.py re-reads the identity every time.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AdminUserRow, AuditEntryResponse, RolePatch, StatusFilterEnum
from audit.store import DEFAULT_QUERY_LIMIT
from auth.dependencies import require_admin
from auth.errors import NotFound
from auth.models import APPROVED, REJECTED, ROLE_ADMIN, Identity, SessionUser

logger = logging.getLogger("enisi.api.admin")

# Auth policy: every route requires admin (require_admin).
router = APIRouter(prefix="/admin")


def _get_target(request: Request, user_id: int) -> Identity:
    identity = request.app.state.identities.get_by_id(user_id)
    if identity is None:
        raise NotFound("User not found.")
    return identity


def _refuse_self(admin: SessionUser, target: Identity, action: str) -> None:
    """[A1] Block an administrator acting destructively on their own account."""
    if target.id == admin.id:
        raise HTTPException(
            status_code=400,
            detail={"code": f"self_{action}", "message": f"You cannot {action} your own account."},
        )


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[AdminUserRow])
def list_users(
    request: Request,
    status: StatusFilterEnum = Query(StatusFilterEnum.all),
    admin: SessionUser = Depends(require_admin),
) -> list[AdminUserRow]:
    identities = request.app.state.identities.list_users(status.value)
    return [AdminUserRow.from_identity(i) for i in identities]


@router.post("/users/{user_id}/approve")
def approve_user(request: Request, user_id: int, admin: SessionUser = Depends(require_admin)) -> dict:
    target = _get_target(request, user_id)
    request.app.state.identities.set_approval(target.id, APPROVED)
    request.app.state.audit.record("user", target.id, "approve", admin.username)
    logger.info("User id=%s approved by %s", target.id, admin.username)
    return {"success": True}


@router.post("/users/{user_id}/reject")
def reject_user(request: Request, user_id: int, admin: SessionUser = Depends(require_admin)) -> dict:
    target = _get_target(request, user_id)
    _refuse_self(admin, target, "reject")
    request.app.state.identities.set_approval(target.id, REJECTED)
    request.app.state.audit.record("user", target.id, "reject", admin.username)
    logger.info("User id=%s rejected by %s", target.id, admin.username)
    return {"success": True}


@router.patch("/users/{user_id}", response_model=AdminUserRow)
def update_role(
    request: Request,
    user_id: int,
    body: RolePatch,
    admin: SessionUser = Depends(require_admin),
) -> AdminUserRow:
    identities = request.app.state.identities
    target = _get_target(request, user_id)
    new_role = body.role.value
    # [A2]
    if target.is_admin and new_role != ROLE_ADMIN and identities.count_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot demote the last admin account."},
        )
    if new_role != target.role:
        identities.set_role(target.id, new_role)
        request.app.state.audit.record("user", target.id, "role", admin.username, f"role={new_role}")
    return AdminUserRow.from_identity(identities.get_by_id(target.id))


@router.delete("/users/{user_id}")
def delete_user(request: Request, user_id: int, admin: SessionUser = Depends(require_admin)) -> dict:
    state = request.app.state
    target = _get_target(request, user_id)
    _refuse_self(admin, target, "delete")  # [A1]
    state.identities.delete_user(target.id)
    state.sessions.delete_for_user(target.id)
    state.audit.record("user", target.id, "delete", admin.username, f"username={target.username}")
    logger.info("User id=%s deleted by %s", target.id, admin.username)
    return {"deleted": True}


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/audit", response_model=list[AuditEntryResponse])
def query_audit(
    request: Request,
    entity: Optional[str] = None,
    action: Optional[str] = None,
    user: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=1),
    admin: SessionUser = Depends(require_admin),
) -> list[AuditEntryResponse]:
    """Newest first. user matches case-insensitively; search is a substring of info."""
    entries = request.app.state.audit.query(
        entity=entity, action=action, username=user, search=search, limit=limit
    )
    return [AuditEntryResponse.from_entry(e) for e in entries]
