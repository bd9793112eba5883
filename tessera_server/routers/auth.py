# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import (
    AccountResponse,
    LoginRequest,
    MeResponse,
    PasswordChange,
    ProfileUpdate,
)
from tessera_server.auth import hash_password_async, verify_password_async
from tessera_server.csrf import CSRF_COOKIE_NAME, generate_csrf_token, set_csrf_cookie
from tessera_server.database import get_db
from tessera_server.dependencies import (
    SESSION_COOKIE_NAME,
    clear_session_cookie,
    get_audit_context,
    get_audit_writer,
    get_optional_auth,
    get_session_manager,
    require_auth,
    set_session_cookie,
)
from tessera_server.models import AuditAction
from tessera_server.rate_limit import enforce_login_rate_limit
from tessera_server.services.accounts import AccountStore
from tessera_server.services.audit import (
    AuditContext,
    AuditEntry,
    AuditLogWriter,
    compute_changes,
    create_audit_context,
)
from tessera_server.services.password_policy import evaluate_password
from tessera_server.services.sessions import ResolvedSession, SessionManager, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_CREDENTIALS = "Invalid credentials"

_dummy_hash: str | None = None


async def _burn_password_check(password: str) -> None:
    """Spend one derivation on unknown accounts so timing does not reveal which emails exist."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = await hash_password_async("not-a-real-password")
    await verify_password_async(password, _dummy_hash)


@router.post("/login", response_model=AccountResponse, dependencies=[Depends(enforce_login_rate_limit)])
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
) -> AccountResponse:
    """Authenticate and set the session cookie. Every failure looks the same to the caller."""
    store = AccountStore(db)
    account = await store.get_by_email(data.email)
    context = create_audit_context(account, request)
    entry = AuditEntry(action=AuditAction.LOGIN, resource_type="Session", resource_name=str(data.email).lower())

    async with audit.attempt(context, entry, db):
        if account is None:
            await _burn_password_check(data.password)
            entry.error_message = "Unknown account"
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)
        entry.resource_id = account.id
        if not await verify_password_async(data.password, account.password_hash):
            entry.error_message = "Wrong password"
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)
        if not account.is_active:
            entry.error_message = "Account disabled"
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)

        issued = await sessions.create(
            account.id,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
        )
        account = await store.update_fields(account.id, last_login_at=utcnow())

    set_session_cookie(response, issued.token, issued.expires_at)
    return AccountResponse.model_validate(account)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    auth: ResolvedSession | None = Depends(get_optional_auth),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> dict:
    """Destroy the caller's session and clear the cookie. Idempotent."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    entry = AuditEntry(
        action=AuditAction.LOGOUT,
        resource_type="Session",
        resource_id=auth.session.id if auth else None,
        resource_name=auth.account.email if auth else None,
    )
    if auth is None:
        # Nobody to attribute it to; still clear whatever the browser holds.
        if token:
            await sessions.destroy(token)
        clear_session_cookie(response)
        return {"success": True}

    async with audit.attempt(context, entry, db):
        await sessions.destroy(token)
    clear_session_cookie(response)
    return {"success": True}


@router.get("/me", response_model=MeResponse)
async def get_me(
    request: Request,
    response: Response,
    auth: ResolvedSession = Depends(require_auth),
) -> MeResponse:
    """Current account and the CSRF token the client must echo on mutations."""
    csrf_token = request.cookies.get(CSRF_COOKIE_NAME) or getattr(request.state, "csrf_token", None)
    if not csrf_token:
        csrf_token = generate_csrf_token()
        set_csrf_cookie(response, csrf_token)
    return MeResponse(user=AccountResponse.model_validate(auth.account), csrf_token=csrf_token)


@router.patch("/me", response_model=AccountResponse)
async def update_me(
    data: ProfileUpdate,
    auth: ResolvedSession = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> AccountResponse:
    """Change own display name."""
    entry = AuditEntry(
        action=AuditAction.UPDATE,
        resource_type="User",
        resource_id=auth.account.id,
        resource_name=auth.account.email,
    )
    async with audit.attempt(context, entry, db):
        store = AccountStore(db)
        current = await store.get_by_id(auth.account.id)
        before = {"name": current.name}
        updated = await store.update_fields(current.id, name=(data.name or "").strip() or None)
        entry.changes = compute_changes(before, {"name": updated.name})
    return AccountResponse.model_validate(updated)


@router.post("/me/password")
async def change_password(
    data: PasswordChange,
    auth: ResolvedSession = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    audit: AuditLogWriter = Depends(get_audit_writer),
    context: AuditContext = Depends(get_audit_context),
) -> dict:
    """Change own password. Every other session of the account is signed out."""
    entry = AuditEntry(
        action=AuditAction.UPDATE,
        resource_type="User",
        resource_id=auth.account.id,
        resource_name=auth.account.email,
    )
    async with audit.attempt(context, entry, db):
        store = AccountStore(db)
        current = await store.get_by_id(auth.account.id)
        if not await verify_password_async(data.current_password, current.password_hash):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
        evaluation = evaluate_password(data.new_password)
        if not evaluation.valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Password does not meet requirements", "errors": evaluation.errors},
            )
        await store.update_fields(current.id, password_hash=await hash_password_async(data.new_password))
        revoked = await sessions.destroy_all_for_account(current.id, except_token=auth.token)
        # The hash itself never goes into the audit trail
        entry.changes = {"after": {"password_changed": True, "sessions_revoked": revoked}}
    return {"success": True, "sessions_revoked": revoked}
