# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invitation API: admins invite by email, invitees accept with a one-time token."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import (
    AcceptInvitationRequest,
    AccountResponse,
    InvitationCreate,
    InvitationCreated,
    InvitationResponse,
)
from tessera_server.auth import hash_password_async, normalize_email
from tessera_server.config import settings
from tessera_server.database import get_db
from tessera_server.dependencies import (
    get_audit_context,
    get_audit_writer,
    get_session_manager,
    require_admin,
    set_session_cookie,
)
from tessera_server.models import AuditAction
from tessera_server.services.accounts import AccountStore
from tessera_server.services.audit import (
    AuditContext,
    AuditEntry,
    AuditLogWriter,
    create_audit_context,
)
from tessera_server.services.email import send_invitation_email
from tessera_server.services.invitations import InvitationManager
from tessera_server.services.password_policy import evaluate_password
from tessera_server.services.sessions import ResolvedSession, SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/invitations", tags=["invitations"])

USER_EXISTS = "User already exists"


@router.get("", response_model=list[InvitationResponse])
async def list_invitations(
    _auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[InvitationResponse]:
    """All invitations, newest first. Token hashes are never returned."""
    invitations = await InvitationManager(db).list_all()
    return [InvitationResponse.model_validate(i) for i in invitations]


@router.post("", response_model=InvitationCreated, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    data: InvitationCreate,
    auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> InvitationCreated:
    """Invite an email address with a role. A pending invitation for the same email is revoked."""
    email = normalize_email(data.email)
    entry = AuditEntry(action=AuditAction.INVITE, resource_type="Invitation", resource_name=email)
    async with audit.attempt(context, entry, db):
        if await AccountStore(db).exists(email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=USER_EXISTS)
        issued = await InvitationManager(db).create(email, data.role.value, invited_by_id=auth.account.id)
        entry.resource_id = issued.invitation.id
        entry.changes = {"after": {"email": email, "role": data.role.value}}

    # The invitation is committed; delivery failure only means the token is handed over another way.
    email_sent = await send_invitation_email(email, issued.token, settings.invite_days)
    if not email_sent:
        logger.warning("Invitation %d created but email was not delivered", issued.invitation.id)
    return InvitationCreated(
        invitation=InvitationResponse.model_validate(issued.invitation),
        token=issued.token,
        email_sent=email_sent,
    )


@router.delete("/{invitation_id}", response_model=InvitationResponse)
async def revoke_invitation(
    invitation_id: int,
    _auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> InvitationResponse:
    entry = AuditEntry(action=AuditAction.DELETE, resource_type="Invitation", resource_id=invitation_id)
    async with audit.attempt(context, entry, db):
        invitation = await InvitationManager(db).revoke(invitation_id)
        if invitation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invitation not found")
        entry.resource_name = invitation.email
        entry.changes = {"before": {"revoked": False}, "after": {"revoked": True}}
    return InvitationResponse.model_validate(invitation)


@router.post("/accept", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def accept_invitation(
    data: AcceptInvitationRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
) -> AccountResponse:
    """Redeem an invitation: create the account with the invited role and sign it in."""
    email = normalize_email(data.email)
    context = create_audit_context(None, request)
    entry = AuditEntry(action=AuditAction.CREATE, resource_type="User", resource_name=email)
    async with audit.attempt(context, entry, db):
        evaluation = evaluate_password(data.password)
        if not evaluation.valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Password does not meet requirements", "errors": evaluation.errors},
            )
        invitations = InvitationManager(db)
        invitation = await invitations.consume(data.token)
        if invitation is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired invitation")
        if invitation.email != email:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email does not match invitation")

        store = AccountStore(db)
        if await store.exists(email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=USER_EXISTS)
        password_hash = await hash_password_async(data.password)
        try:
            account = await store.create(email, password_hash, invitation.role, name=data.name)
        except IntegrityError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=USER_EXISTS) from None
        if not await invitations.mark_accepted(invitation.id):
            # Lost a race with a concurrent accept of the same token
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired invitation")

        context.user_id = account.id
        context.user_email = account.email
        entry.resource_id = account.id
        entry.changes = {"after": {"email": account.email, "role": account.role, "invitation_id": invitation.id}}
        issued = await sessions.create(account.id, user_agent=context.user_agent, ip_address=context.ip_address)

    set_session_cookie(response, issued.token, issued.expires_at)
    return AccountResponse.model_validate(account)
