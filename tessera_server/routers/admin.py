# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Admin API - forced logout of another account. Requires an elevated admin."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import ForceLogoutResponse
from tessera_server.database import get_db
from tessera_server.dependencies import (
    get_audit_context,
    get_audit_writer,
    get_session_manager,
    require_admin,
)
from tessera_server.models import AuditAction
from tessera_server.services.accounts import AccountStore
from tessera_server.services.audit import AuditContext, AuditEntry, AuditLogWriter
from tessera_server.services.sessions import ResolvedSession, SessionManager

router = APIRouter(prefix="/admin", tags=["admin"])


@router.delete("/users/{account_id}/sessions", response_model=ForceLogoutResponse)
async def force_logout(
    account_id: int,
    _auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> ForceLogoutResponse:
    """Revoke every session of the target account, the caller's own included if it is the target."""
    entry = AuditEntry(action=AuditAction.DELETE, resource_type="Session", resource_id=account_id)
    async with audit.attempt(context, entry, db):
        target = await AccountStore(db).get_by_id(account_id)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        entry.resource_name = target.email
        revoked = await sessions.destroy_all_for_account(account_id)
        entry.changes = {"after": {"sessions_revoked": revoked}}
    return ForceLogoutResponse(
        sessions_revoked=revoked,
        target_user={"id": target.id, "email": target.email, "name": target.name},
    )
