# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Self-service session management: list, revoke one, revoke all."""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import LogoutAllRequest, LogoutAllResponse, SessionResponse
from tessera_server.database import get_db
from tessera_server.dependencies import (
    clear_session_cookie,
    get_audit_context,
    get_audit_writer,
    get_session_manager,
    require_auth,
)
from tessera_server.models import AuditAction
from tessera_server.services.audit import AuditContext, AuditEntry, AuditLogWriter
from tessera_server.services.sessions import ResolvedSession, SessionManager

router = APIRouter(prefix="/auth/sessions", tags=["sessions"])


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    auth: ResolvedSession = Depends(require_auth),
    sessions: SessionManager = Depends(get_session_manager),
) -> list[SessionResponse]:
    rows = await sessions.list_for_account(auth.account.id)
    out = []
    for row in rows:
        item = SessionResponse.model_validate(row)
        item.is_current = row.id == auth.session.id
        out.append(item)
    return out


@router.delete("/{session_id}")
async def revoke_session(
    session_id: int,
    response: Response,
    auth: ResolvedSession = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> dict:
    """Revoke one of the caller's own sessions. Someone else's session is simply not found."""
    entry = AuditEntry(
        action=AuditAction.LOGOUT,
        resource_type="Session",
        resource_id=session_id,
        resource_name=auth.account.email,
    )
    async with audit.attempt(context, entry, db):
        if not await sessions.destroy_by_id(auth.account.id, session_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    current = session_id == auth.session.id
    if current:
        clear_session_cookie(response)
    return {"success": True, "was_current": current}


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    response: Response,
    data: LogoutAllRequest | None = None,
    auth: ResolvedSession = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> LogoutAllResponse:
    keep_current = data.keep_current if data else False
    entry = AuditEntry(
        action=AuditAction.LOGOUT,
        resource_type="Session",
        resource_id=auth.account.id,
        resource_name=auth.account.email,
    )
    async with audit.attempt(context, entry, db):
        revoked = await sessions.destroy_all_for_account(
            auth.account.id,
            except_token=auth.token if keep_current else None,
        )
        entry.changes = {"after": {"sessions_revoked": revoked, "keep_current": keep_current}}
    if not keep_current:
        clear_session_cookie(response)
    return LogoutAllResponse(sessions_revoked=revoked, keep_current=keep_current)
