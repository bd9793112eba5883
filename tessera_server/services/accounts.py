# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account store: lookups by identifier and single-statement field updates."""

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tessera_server.auth import normalize_email
from tessera_server.models import Account

# Fields an UPDATE may touch. Keeps callers from writing arbitrary columns.
UPDATABLE_FIELDS = {"name", "role", "is_active", "password_hash", "last_login_at"}


class AccountStore:
    """Thin adapter over the accounts table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, account_id: int) -> Account | None:
        result = await self.db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Account | None:
        result = await self.db.execute(
            select(Account).where(Account.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def exists(self, email: str) -> bool:
        result = await self.db.execute(
            select(Account.id).where(Account.email == normalize_email(email))
        )
        return result.first() is not None

    async def list_all(self) -> list[Account]:
        result = await self.db.execute(select(Account).order_by(Account.created_at.desc(), Account.id.desc()))
        return list(result.scalars().all())

    async def create(
        self,
        email: str,
        password_hash: str,
        role: str,
        name: str | None = None,
        is_active: bool = True,
    ) -> Account:
        """Insert a new account. The unique constraint on email raises IntegrityError on a race."""
        account = Account(
            email=normalize_email(email),
            password_hash=password_hash,
            name=(name or "").strip() or None,
            role=role,
            is_active=is_active,
        )
        self.db.add(account)
        await self.db.flush()
        await self.db.refresh(account)
        return account

    async def update_fields(self, account_id: int, **fields: Any) -> Account | None:
        """Atomic single-statement UPDATE; returns the fresh row or None if it does not exist."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update account fields: {', '.join(sorted(unknown))}")
        if fields:
            result = await self.db.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
        account = await self.db.get(Account, account_id, populate_existing=True)
        return account
