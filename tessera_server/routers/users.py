# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account administration. Elevated-admin only."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import AccountResponse, AccountUpdate
from tessera_server.database import get_db
from tessera_server.dependencies import (
    get_audit_context,
    get_audit_writer,
    get_session_manager,
    require_admin,
)
from tessera_server.models import AuditAction, Role
from tessera_server.services.accounts import AccountStore
from tessera_server.services.audit import AuditContext, AuditEntry, AuditLogWriter, compute_changes
from tessera_server.services.sessions import ResolvedSession, SessionManager

router = APIRouter(prefix="/auth/users", tags=["users"])

# Fields an admin may change on another account, and the ones diffed for the audit trail
ADMIN_EDITABLE = ("name", "role", "is_active")


def _snapshot(account) -> dict:
    return {field: getattr(account, field) for field in ADMIN_EDITABLE}


@router.get("", response_model=list[AccountResponse])
async def list_users(
    _auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[AccountResponse]:
    accounts = await AccountStore(db).list_all()
    return [AccountResponse.model_validate(a) for a in accounts]


@router.patch("/{account_id}", response_model=AccountResponse)
async def update_user(
    account_id: int,
    data: AccountUpdate,
    auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> AccountResponse:
    """Change name, role or active flag. Deactivating an account signs it out everywhere."""
    updates = data.model_dump(exclude_unset=True)
    if updates.get("role") is not None:
        updates["role"] = Role(updates["role"]).value
    if "role" in updates and updates["role"] is None:
        del updates["role"]
    if "is_active" in updates and updates["is_active"] is None:
        del updates["is_active"]
    if "name" in updates:
        updates["name"] = (updates["name"] or "").strip() or None

    entry = AuditEntry(action=AuditAction.UPDATE, resource_type="User", resource_id=account_id)
    async with audit.attempt(context, entry, db):
        if not updates:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No updates provided")
        store = AccountStore(db)
        target = await store.get_by_id(account_id)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        entry.resource_name = target.email
        if target.id == auth.account.id:
            if updates.get("role", target.role) != Role.SUPER_ADMIN.value:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot change your own role")
            if updates.get("is_active") is False:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot deactivate your own account")

        before = _snapshot(target)
        updated = await store.update_fields(account_id, **updates)
        revoked = 0
        if before["is_active"] and not updated.is_active:
            revoked = await sessions.destroy_all_for_account(account_id)
        entry.changes = compute_changes(before, _snapshot(updated))
        if revoked and entry.changes is not None:
            entry.changes["after"]["sessions_revoked"] = revoked
    return AccountResponse.model_validate(updated)
