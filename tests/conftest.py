# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Each test gets its own SQLite database under tmp_path."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tessera_server.auth import hash_password
from tessera_server.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME
from tessera_server.database import init_db
from tessera_server.main import app
from tessera_server.models import Account, Role
from tessera_server.rate_limit import RateLimiter
from tessera_server.services.sessions import OpportunisticCleanup

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Tr0ub4dor&3-Horse!Staple"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tessera.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def client(session_maker):
    app.state.session_maker = session_maker
    app.state.login_limiter = RateLimiter(max_attempts=5, window_seconds=900)
    app.state.cleanup = OpportunisticCleanup(session_maker, probability=0)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.session_maker = None
    app.state.login_limiter = None
    app.state.cleanup = None


async def create_account(
    session_maker,
    email: str,
    password: str,
    role: Role = Role.VIEWER,
    is_active: bool = True,
) -> Account:
    async with session_maker() as session:
        account = Account(
            email=email,
            password_hash=hash_password(password),
            role=role.value,
            is_active=is_active,
        )
        session.add(account)
        await session.commit()
        await session.refresh(account)
        return account


@pytest.fixture
async def admin(session_maker) -> Account:
    return await create_account(session_maker, ADMIN_EMAIL, ADMIN_PASSWORD, Role.SUPER_ADMIN)


async def login(client: AsyncClient, email: str, password: str):
    return await client.post("/api/auth/login", json={"email": email, "password": password})


def csrf_headers(client: AsyncClient) -> dict[str, str]:
    return {CSRF_HEADER_NAME: client.cookies[CSRF_COOKIE_NAME]}


@pytest.fixture
async def admin_client(client, admin) -> AsyncClient:
    r = await login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert r.status_code == 200, r.text
    return client
