# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Login sessions: issue, resolve, revoke and reap opaque bearer tokens.

The raw token only ever exists in the caller's cookie. Storage holds its HMAC,
so a leaked sessions table cannot be replayed.
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tessera_server.auth import generate_token, hash_token
from tessera_server.config import settings
from tessera_server.models import Account, AuthSession

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IssuedSession:
    token: str
    expires_at: datetime


@dataclass
class ResolvedSession:
    """The caller: their raw token, the session row and the (active) account."""

    token: str
    session: AuthSession
    account: Account


@dataclass
class CleanupResult:
    sessions_deleted: int
    invitations_deleted: int


class OpportunisticCleanup:
    """Reaps expired rows inline, at most once per interval and only on a random draw.

    There is no background timer. Correctness never depends on reaping: expired
    sessions and invitations are rejected at lookup time whether or not they
    have been deleted yet.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        interval_seconds: float | None = None,
        probability: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.session_maker = session_maker
        self.interval_seconds = (
            settings.cleanup_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.probability = settings.cleanup_probability if probability is None else probability
        self.clock = clock
        self.rng = rng
        self.last_run: float | None = None

    def should_run(self) -> bool:
        now = self.clock()
        if self.last_run is not None and now - self.last_run < self.interval_seconds:
            return False
        if self.rng() >= self.probability:
            return False
        # Claimed before any await so concurrent requests cannot both run it.
        self.last_run = now
        return True

    async def maybe_run(self) -> CleanupResult | None:
        """Run cleanup if both throttles allow it. Never raises."""
        if self.session_maker is None or not self.should_run():
            return None
        try:
            async with self.session_maker() as db:
                result = await cleanup_all(db)
                await db.commit()
        except Exception:
            logger.exception("Opportunistic cleanup failed")
            return None
        logger.info(
            "Cleanup deleted %d expired sessions, %d expired invitations",
            result.sessions_deleted,
            result.invitations_deleted,
        )
        return result


class SessionManager:
    """Sole authority on who the caller is."""

    def __init__(
        self,
        db: AsyncSession,
        ttl: timedelta | None = None,
        now: Callable[[], datetime] = utcnow,
        cleanup: OpportunisticCleanup | None = None,
    ):
        self.db = db
        self.ttl = ttl or timedelta(hours=settings.session_ttl_hours)
        self.now = now
        self.cleanup = cleanup

    async def create(
        self,
        account_id: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> IssuedSession:
        """Store a new session and return the raw token. It cannot be retrieved again."""
        token = generate_token(32)
        issued_at = self.now()
        expires_at = issued_at + self.ttl
        self.db.add(
            AuthSession(
                account_id=account_id,
                token_hash=hash_token(token),
                expires_at=expires_at,
                created_at=issued_at,
                user_agent=user_agent[:512] if user_agent else None,
                ip_address=ip_address[:64] if ip_address else None,
            )
        )
        await self.db.flush()
        return IssuedSession(token=token, expires_at=expires_at)

    async def resolve(self, token: str | None) -> ResolvedSession | None:
        """Unexpired session joined to an active account, else None.

        Unknown, expired and disabled-account cases are indistinguishable to the caller.
        """
        if not token:
            return None
        result = await self.db.execute(
            select(AuthSession, Account)
            .join(Account, Account.id == AuthSession.account_id)
            .where(
                AuthSession.token_hash == hash_token(token),
                AuthSession.expires_at > self.now(),
                Account.is_active.is_(True),
            )
        )
        row = result.first()
        if row is None:
            return None
        session, account = row
        if self.cleanup is not None:
            await self.cleanup.maybe_run()
        return ResolvedSession(token=token, session=session, account=account)

    async def destroy(self, token: str) -> None:
        """Delete by token. Unknown tokens are not an error."""
        await self.db.execute(delete(AuthSession).where(AuthSession.token_hash == hash_token(token)))
        await self.db.flush()

    async def destroy_by_id(self, account_id: int, session_id: int) -> bool:
        """Delete one of an account's own sessions. False if it is not theirs or is gone."""
        result = await self.db.execute(
            delete(AuthSession).where(
                AuthSession.id == session_id,
                AuthSession.account_id == account_id,
            )
        )
        await self.db.flush()
        return result.rowcount > 0

    async def destroy_all_for_account(self, account_id: int, except_token: str | None = None) -> int:
        """Bulk revoke. With except_token the caller's own session survives."""
        conditions = [AuthSession.account_id == account_id]
        if except_token:
            conditions.append(AuthSession.token_hash != hash_token(except_token))
        result = await self.db.execute(delete(AuthSession).where(*conditions))
        await self.db.flush()
        return result.rowcount

    async def list_for_account(self, account_id: int) -> list[AuthSession]:
        result = await self.db.execute(
            select(AuthSession)
            .where(AuthSession.account_id == account_id)
            .order_by(AuthSession.created_at.desc(), AuthSession.id.desc())
        )
        return list(result.scalars().all())

    async def reap_expired(self) -> int:
        result = await self.db.execute(
            delete(AuthSession)
            .where(AuthSession.expires_at < self.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


async def cleanup_all(db: AsyncSession, now: Callable[[], datetime] = utcnow) -> CleanupResult:
    from tessera_server.services.invitations import InvitationManager

    sessions_deleted = await SessionManager(db, now=now).reap_expired()
    invitations_deleted = await InvitationManager(db, now=now).reap_expired()
    return CleanupResult(sessions_deleted=sessions_deleted, invitations_deleted=invitations_deleted)
