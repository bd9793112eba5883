# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""FastAPI dependencies: the caller's session, role checks, cookies and shared services."""

from datetime import datetime

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.config import settings
from tessera_server.database import get_db, get_session_maker
from tessera_server.models import Role
from tessera_server.services.audit import AuditContext, AuditLogWriter, create_audit_context
from tessera_server.services.sessions import OpportunisticCleanup, ResolvedSession, SessionManager

SESSION_COOKIE_NAME = "tessera_session"


def get_cleanup(request: Request) -> OpportunisticCleanup:
    cleanup = getattr(request.app.state, "cleanup", None)
    if cleanup is None:
        cleanup = request.app.state.cleanup = OpportunisticCleanup(get_session_maker(request.app))
    return cleanup


def get_session_manager(request: Request, db: AsyncSession = Depends(get_db)) -> SessionManager:
    return SessionManager(db, cleanup=get_cleanup(request))


def get_audit_writer(request: Request) -> AuditLogWriter:
    return AuditLogWriter(get_session_maker(request.app))


async def get_optional_auth(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
) -> ResolvedSession | None:
    """The caller's session, or None. Reuses what the gatekeeper already resolved."""
    if getattr(request.state, "auth_resolved", False):
        return request.state.auth
    auth = await sessions.resolve(request.cookies.get(SESSION_COOKIE_NAME))
    request.state.auth = auth
    request.state.auth_resolved = True
    return auth


async def require_auth(auth: ResolvedSession | None = Depends(get_optional_auth)) -> ResolvedSession:
    """Dependency: require a valid session. Raises 401 otherwise, without saying why."""
    if auth is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return auth


def require_role(*roles: Role):
    """Dependency factory: require a session whose account holds one of the roles (403 otherwise)."""
    allowed = {r.value for r in roles}

    async def dependency(auth: ResolvedSession = Depends(require_auth)) -> ResolvedSession:
        if auth.account.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return auth

    return dependency


require_admin = require_role(Role.SUPER_ADMIN)


def get_audit_context(
    request: Request,
    auth: ResolvedSession | None = Depends(get_optional_auth),
) -> AuditContext:
    return create_audit_context(auth.account if auth else None, request)


def set_session_cookie(response: Response, token: str, expires_at: datetime) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        expires=expires_at,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )
