# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Session manager and opportunistic cleanup."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from conftest import create_account
from tessera_server.auth import hash_token
from tessera_server.models import AuthSession, Role
from tessera_server.services.accounts import AccountStore
from tessera_server.services.sessions import OpportunisticCleanup, SessionManager, cleanup_all

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
async def account(session_maker):
    return await create_account(session_maker, "editor@example.com", "irrelevant", Role.EDITOR)


async def test_create_and_resolve(db, account, clock):
    sessions = SessionManager(db, ttl=timedelta(hours=1), now=clock)
    issued = await sessions.create(account.id, user_agent="pytest", ip_address="10.0.0.1")
    await db.commit()

    assert issued.expires_at == clock.now + timedelta(hours=1)
    resolved = await sessions.resolve(issued.token)
    assert resolved is not None
    assert resolved.account.id == account.id
    assert resolved.session.user_agent == "pytest"


async def test_raw_token_is_not_stored(db, account, clock):
    sessions = SessionManager(db, now=clock)
    issued = await sessions.create(account.id)
    await db.commit()
    stored = await db.scalar(select(AuthSession.token_hash))
    assert stored == hash_token(issued.token)
    assert stored != issued.token


async def test_unknown_and_empty_tokens_do_not_resolve(db, account, clock):
    sessions = SessionManager(db, now=clock)
    assert await sessions.resolve(None) is None
    assert await sessions.resolve("") is None
    assert await sessions.resolve("not-a-token") is None


async def test_expired_session_does_not_resolve(db, account, clock):
    sessions = SessionManager(db, ttl=timedelta(hours=1), now=clock)
    issued = await sessions.create(account.id)
    await db.commit()

    clock.advance(minutes=59)
    assert await sessions.resolve(issued.token) is not None
    clock.advance(minutes=2)
    assert await sessions.resolve(issued.token) is None


async def test_destroy(db, account, clock):
    sessions = SessionManager(db, now=clock)
    issued = await sessions.create(account.id)
    await db.commit()
    await sessions.destroy(issued.token)
    await db.commit()
    assert await sessions.resolve(issued.token) is None
    # Unknown token is not an error
    await sessions.destroy(issued.token)


async def test_inactive_account_does_not_resolve(db, account, clock):
    sessions = SessionManager(db, now=clock)
    issued = await sessions.create(account.id)
    await AccountStore(db).update_fields(account.id, is_active=False)
    await db.commit()
    assert await sessions.resolve(issued.token) is None


async def test_destroy_all_except_current(db, account, clock):
    sessions = SessionManager(db, now=clock)
    keep = await sessions.create(account.id)
    other1 = await sessions.create(account.id)
    other2 = await sessions.create(account.id)
    await db.commit()

    revoked = await sessions.destroy_all_for_account(account.id, except_token=keep.token)
    await db.commit()

    assert revoked == 2
    assert await sessions.resolve(keep.token) is not None
    assert await sessions.resolve(other1.token) is None
    assert await sessions.resolve(other2.token) is None


async def test_destroy_all(db, account, clock):
    sessions = SessionManager(db, now=clock)
    await sessions.create(account.id)
    await sessions.create(account.id)
    await db.commit()
    assert await sessions.destroy_all_for_account(account.id) == 2


async def test_destroy_by_id_only_own_sessions(db, session_maker, account, clock):
    other = await create_account(session_maker, "viewer@example.com", "irrelevant")
    sessions = SessionManager(db, now=clock)
    mine = await sessions.create(account.id)
    await db.commit()
    listed = await sessions.list_for_account(account.id)
    assert len(listed) == 1

    assert await sessions.destroy_by_id(other.id, listed[0].id) is False
    assert await sessions.resolve(mine.token) is not None
    assert await sessions.destroy_by_id(account.id, listed[0].id) is True
    assert await sessions.resolve(mine.token) is None


async def test_reap_expired(db, account, clock):
    sessions = SessionManager(db, ttl=timedelta(hours=1), now=clock)
    expired = await sessions.create(account.id)
    clock.advance(hours=2)
    live = await sessions.create(account.id)
    await db.commit()

    result = await cleanup_all(db, now=clock)
    await db.commit()

    assert result.sessions_deleted == 1
    assert await db.scalar(select(func.count()).select_from(AuthSession)) == 1
    assert await sessions.resolve(live.token) is not None
    assert await sessions.resolve(expired.token) is None


async def test_reap_expired_with_rows_loaded(db, account, clock):
    sessions = SessionManager(db, ttl=timedelta(hours=1), now=clock)
    await sessions.create(account.id)
    await db.commit()
    # Rows read back from SQLite sit in the identity map with naive datetimes
    assert len(await sessions.list_for_account(account.id)) == 1

    assert await sessions.reap_expired() == 0
    clock.advance(hours=2)
    assert await sessions.reap_expired() == 1
    await db.commit()
    assert await db.scalar(select(func.count()).select_from(AuthSession)) == 0


class Ticker:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def test_cleanup_throttles():
    ticker = Ticker()
    draws = iter([0.5, 0.001, 0.001, 0.001])
    cleanup = OpportunisticCleanup(
        interval_seconds=3600,
        probability=0.01,
        clock=ticker,
        rng=lambda: next(draws),
    )
    assert cleanup.should_run() is False  # draw too high
    assert cleanup.should_run() is True
    ticker.value = 1800
    assert cleanup.should_run() is False  # inside the interval
    ticker.value = 3601
    assert cleanup.should_run() is True


async def test_cleanup_runs_on_resolve(session_maker, db, account):
    sessions = SessionManager(db, ttl=timedelta(hours=1))
    issued = await sessions.create(account.id)
    await db.commit()
    async with session_maker() as other:
        stale = SessionManager(other, ttl=timedelta(hours=-1))
        await stale.create(account.id)
        await other.commit()

    cleanup = OpportunisticCleanup(session_maker, interval_seconds=0, probability=1.0)
    resolved = await SessionManager(db, cleanup=cleanup).resolve(issued.token)
    assert resolved is not None
    assert cleanup.last_run is not None
    assert await db.scalar(select(func.count()).select_from(AuthSession)) == 1


async def test_cleanup_failure_is_swallowed():
    class BrokenMaker:
        def __call__(self):
            raise RuntimeError("database down")

    cleanup = OpportunisticCleanup(BrokenMaker(), interval_seconds=0, probability=1.0)
    assert await cleanup.maybe_run() is None
