# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invitations: time-boxed, single-use, role-carrying account provisioning tokens."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.auth import generate_token, hash_token, normalize_email
from tessera_server.config import settings
from tessera_server.models import Invitation
from tessera_server.services.sessions import utcnow


@dataclass
class IssuedInvitation:
    invitation: Invitation
    token: str


class InvitationManager:
    def __init__(
        self,
        db: AsyncSession,
        ttl: timedelta | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ttl = ttl or timedelta(days=settings.invite_days)
        self.now = now

    async def create(self, email: str, role: str, invited_by_id: int | None = None) -> IssuedInvitation:
        """Issue an invitation, revoking any still-pending one for the same email first."""
        normalized = normalize_email(email)
        await self.revoke_pending(normalized)
        token = generate_token(24)
        issued_at = self.now()
        invitation = Invitation(
            email=normalized,
            role=role,
            token_hash=hash_token(token),
            expires_at=issued_at + self.ttl,
            invited_by_id=invited_by_id,
            created_at=issued_at,
            revoked=False,
        )
        self.db.add(invitation)
        await self.db.flush()
        await self.db.refresh(invitation)
        return IssuedInvitation(invitation=invitation, token=token)

    async def revoke_pending(self, email: str) -> int:
        result = await self.db.execute(
            update(Invitation)
            .where(
                Invitation.email == normalize_email(email),
                Invitation.accepted_at.is_(None),
                Invitation.revoked.is_(False),
            )
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def consume(self, token: str | None) -> Invitation | None:
        """Look up a consumable invitation. Does not mark it accepted.

        The caller stamps acceptance with mark_accepted once the account exists,
        so a failure mid-provisioning leaves the invitation usable.
        """
        if not token:
            return None
        result = await self.db.execute(
            select(Invitation).where(
                Invitation.token_hash == hash_token(token),
                Invitation.revoked.is_(False),
                Invitation.accepted_at.is_(None),
                Invitation.expires_at > self.now(),
            )
        )
        return result.scalar_one_or_none()

    async def mark_accepted(self, invitation_id: int) -> bool:
        """Stamp acceptance once. Returns False if it was already stamped (or is gone)."""
        result = await self.db.execute(
            update(Invitation)
            .where(Invitation.id == invitation_id, Invitation.accepted_at.is_(None))
            .values(accepted_at=self.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def revoke(self, invitation_id: int) -> Invitation | None:
        invitation = await self.db.get(Invitation, invitation_id)
        if invitation is None:
            return None
        invitation.revoked = True
        await self.db.flush()
        return invitation

    async def list_all(self) -> list[Invitation]:
        result = await self.db.execute(
            select(Invitation).order_by(Invitation.created_at.desc(), Invitation.id.desc())
        )
        return list(result.scalars().all())

    async def reap_expired(self) -> int:
        """Delete expired invitations that were never accepted or were revoked."""
        result = await self.db.execute(
            delete(Invitation)
            .where(
                Invitation.expires_at < self.now(),
                or_(Invitation.accepted_at.is_(None), Invitation.revoked.is_(True)),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
