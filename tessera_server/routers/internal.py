# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Cron hook for reaping expired sessions and invitations."""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.api.schemas import CleanupResponse
from tessera_server.config import settings
from tessera_server.database import get_db
from tessera_server.services.sessions import cleanup_all, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])


def require_cleanup_secret(authorization: str | None = Header(None)) -> None:
    """Bearer check against cleanup_secret. The endpoint does not exist when no secret is set."""
    if not settings.cleanup_secret:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    expected = f"Bearer {settings.cleanup_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_cleanup_secret)])
async def run_cleanup(db: AsyncSession = Depends(get_db)) -> CleanupResponse:
    result = await cleanup_all(db)
    await db.commit()
    logger.info(
        "Scheduled cleanup deleted %d expired sessions, %d expired invitations",
        result.sessions_deleted,
        result.invitations_deleted,
    )
    return CleanupResponse(
        sessions_deleted=result.sessions_deleted,
        invitations_deleted=result.invitations_deleted,
        timestamp=utcnow(),
    )
