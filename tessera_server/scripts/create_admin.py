#!/usr/bin/env python3
# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Create the first super admin. Run: python -m tessera_server.scripts.create_admin"""

import asyncio
import getpass
import sys

from tessera_server.auth import hash_password_async
from tessera_server.database import async_session_maker, init_db
from tessera_server.models import Role
from tessera_server.services.accounts import AccountStore
from tessera_server.services.password_policy import evaluate_password


async def create_admin(db, email: str, password: str, name: str | None = None):
    """Insert a super admin. Raises ValueError if the password is weak or the email is taken."""
    evaluation = evaluate_password(password)
    if not evaluation.valid:
        raise ValueError("; ".join(evaluation.errors))
    store = AccountStore(db)
    if await store.exists(email):
        raise ValueError("User already exists")
    account = await store.create(email, await hash_password_async(password), Role.SUPER_ADMIN.value, name=name)
    await db.commit()
    return account


async def main():
    await init_db()
    email = input("Admin email: ").strip()
    name = input("Display name (optional): ").strip() or None
    password = getpass.getpass("Password: ")
    if not email or not password:
        print("Email and password required")
        sys.exit(1)
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match")
        sys.exit(1)

    async with async_session_maker() as session:
        try:
            await create_admin(session, email, password, name=name)
        except ValueError as e:
            print(e)
            sys.exit(1)
    print("Admin user created.")


if __name__ == "__main__":
    asyncio.run(main())
