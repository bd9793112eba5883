# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Audit trail browsing. Elevated-admin only."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import AuditLogPage
from tessera_server.database import get_db
from tessera_server.dependencies import require_admin
from tessera_server.models import AuditAction, AuditStatus
from tessera_server.services.audit import AuditLogFilters, get_audit_logs
from tessera_server.services.sessions import ResolvedSession

router = APIRouter(prefix="/audit-logs", tags=["audit"])

MAX_PAGE_SIZE = 100


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(
    user_id: int | None = Query(None),
    action: AuditAction | None = Query(None),
    resource_type: str | None = Query(None, max_length=64),
    resource_id: int | None = Query(None),
    status: AuditStatus | None = Query(None),
    search: str | None = Query(None, max_length=255),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    _auth: ResolvedSession = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Newest first. page_size above the maximum is clamped rather than rejected."""
    filters = AuditLogFilters(
        user_id=user_id,
        action=action.value if action else None,
        resource_type=resource_type,
        resource_id=resource_id,
        status=status.value if status else None,
        search=search.strip() if search and search.strip() else None,
        start_date=start_date,
        end_date=end_date,
    )
    return await get_audit_logs(db, filters, page=page, page_size=min(page_size, MAX_PAGE_SIZE))
