# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Audit trail for privileged operations.

Writes go through their own database session so that an entry is recorded even
when the request's transaction was rolled back, and a failed audit write is
logged rather than raised: it must never replace the outcome it describes.
"""

import json
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import HTTPException, Request
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tessera_server.models import Account, AuditAction, AuditLog, AuditStatus

logger = logging.getLogger(__name__)

ANONYMOUS_ACTOR = "anonymous"

# Stands in for a key that exists on only one side of a change set. JSON has no
# "undefined", and an explicit null is a real value that must stay distinct.
ABSENT: dict[str, bool] = {"$absent": True}


def is_absent(value: Any) -> bool:
    """True for the ABSENT marker.

    The marker is plain JSON, so a stored field whose value is exactly
    ``{"$absent": true}`` reads back as absent. Any other dict, including one
    with extra keys beside ``$absent``, is an ordinary value.
    """
    return isinstance(value, dict) and value == ABSENT


@dataclass
class AuditContext:
    user_id: int | None
    user_email: str
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuditEntry:
    action: AuditAction
    resource_type: str
    resource_id: int | None = None
    resource_name: str | None = None
    changes: dict[str, Any] | None = None
    status: AuditStatus = AuditStatus.SUCCESS
    error_message: str | None = None


def client_ip(request: Request) -> str | None:
    """Caller address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer.

    Trust boundary: this believes X-Forwarded-For, so it is only meaningful behind a
    reverse proxy that overwrites that header. Untrusted deployments must strip it at the edge.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client:
        return request.client.host or None
    return None


def create_audit_context(account: Account | None, request: Request) -> AuditContext:
    return AuditContext(
        user_id=account.id if account else None,
        user_email=account.email if account else ANONYMOUS_ACTOR,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") or None,
    )


def _canonical(value: Any) -> str:
    """Structural identity: nested dicts compare regardless of key order."""
    return json.dumps(value, sort_keys=True, default=str)


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def compute_changes(
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> dict[str, dict[str, Any]] | None:
    """Before/after diff of two field maps, or None when nothing changed.

    Only differing keys appear. A key present on one side only shows up on the
    other side as ABSENT, so additions and removals stay visible. An empty map
    is a present side; only None means the record did not exist.
    """
    if before is None and after is None:
        return None
    if before is not None and after is not None:
        changed_before: dict[str, Any] = {}
        changed_after: dict[str, Any] = {}
        for key in list(before) + [k for k in after if k not in before]:
            old = before[key] if key in before else ABSENT
            new = after[key] if key in after else ABSENT
            if _canonical(old) != _canonical(new):
                changed_before[key] = old
                changed_after[key] = new
        if not changed_before:
            return None
        return {"before": _jsonable(changed_before), "after": _jsonable(changed_after)}
    if before is not None:
        return {"before": _jsonable(before)}
    return {"after": _jsonable(after)}


class AuditLogWriter:
    """Appends audit entries. The only code that writes audit_logs."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def log(self, context: AuditContext, entry: AuditEntry) -> bool:
        """Record one entry. Returns False (after logging) if the write failed."""
        failed = entry.status == AuditStatus.FAILED
        try:
            async with self.session_maker() as db:
                db.add(
                    AuditLog(
                        user_id=context.user_id,
                        user_email=context.user_email,
                        action=AuditAction(entry.action).value,
                        resource_type=entry.resource_type,
                        resource_id=entry.resource_id,
                        resource_name=entry.resource_name[:255] if entry.resource_name else None,
                        # Failed attempts never carry a change set
                        changes=None if failed else (entry.changes or None),
                        ip_address=context.ip_address,
                        user_agent=context.user_agent[:512] if context.user_agent else None,
                        status=AuditStatus(entry.status).value,
                        error_message=entry.error_message,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("Failed to write audit log (%s %s)", entry.action, entry.resource_type)
            return False
        return True

    @asynccontextmanager
    async def attempt(
        self,
        context: AuditContext,
        entry: AuditEntry,
        db: AsyncSession | None = None,
    ) -> AsyncIterator[AuditEntry]:
        """Wrap one privileged mutation so it is logged exactly once, success or failure.

        The body fills in entry (resource id/name, changes) as it learns them. On
        success db is committed before the entry is written; on any exception db
        is rolled back, the entry is written as FAILED and the exception re-raised.
        """
        try:
            yield entry
            if db is not None:
                await db.commit()
        except Exception as exc:
            if db is not None:
                await db.rollback()
            entry.status = AuditStatus.FAILED
            entry.changes = None
            entry.error_message = entry.error_message or describe_error(exc)
            await self.log(context, entry)
            raise
        await self.log(context, entry)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            detail = detail.get("error") or json.dumps(detail, default=str)
        return f"{exc.status_code}: {detail}"
    return f"{type(exc).__name__}: {exc}"


@dataclass
class AuditLogFilters:
    user_id: int | None = None
    action: str | None = None
    resource_type: str | None = None
    resource_id: int | None = None
    status: str | None = None
    search: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


async def get_audit_logs(
    db: AsyncSession,
    filters: AuditLogFilters,
    page: int = 1,
    page_size: int = 50,
) -> dict[str, Any]:
    """Newest-first page of audit entries, joined with the actor's current display name."""
    conditions = []
    if filters.user_id is not None:
        conditions.append(AuditLog.user_id == filters.user_id)
    if filters.action:
        conditions.append(AuditLog.action == filters.action)
    if filters.resource_type:
        conditions.append(AuditLog.resource_type == filters.resource_type)
    if filters.resource_id is not None:
        conditions.append(AuditLog.resource_id == filters.resource_id)
    if filters.status:
        conditions.append(AuditLog.status == filters.status)
    if filters.start_date:
        conditions.append(AuditLog.created_at >= filters.start_date)
    if filters.end_date:
        conditions.append(AuditLog.created_at <= filters.end_date)
    if filters.search:
        pattern = f"%{filters.search}%"
        conditions.append(or_(AuditLog.user_email.like(pattern), AuditLog.resource_name.like(pattern)))

    total = await db.scalar(select(func.count()).select_from(AuditLog).where(*conditions)) or 0
    page = max(page, 1)
    result = await db.execute(
        select(AuditLog, Account.name)
        .outerjoin(Account, Account.id == AuditLog.user_id)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    )
    logs = []
    for log, user_name in result.all():
        logs.append(
            {
                "id": log.id,
                "user_id": log.user_id,
                "user_email": log.user_email,
                "user_name": user_name,
                "action": log.action,
                "resource_type": log.resource_type,
                "resource_id": log.resource_id,
                "resource_name": log.resource_name,
                "changes": log.changes,
                "ip_address": log.ip_address,
                "user_agent": log.user_agent,
                "status": log.status,
                "error_message": log.error_message,
                "created_at": log.created_at,
            }
        )
    return {
        "logs": logs,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size) if page_size else 0,
    }
