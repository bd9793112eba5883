# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invitation manager: issue, consume, revoke, reap."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from tessera_server.models import Invitation, Role
from tessera_server.services.invitations import InvitationManager

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def invitations(db, clock):
    return InvitationManager(db, ttl=timedelta(days=7), now=clock)


async def test_create_normalizes_and_hashes(invitations, db):
    issued = await invitations.create("  Alice@Example.com ", Role.EDITOR.value)
    await db.commit()
    assert issued.invitation.email == "alice@example.com"
    assert issued.invitation.token_hash != issued.token
    assert len(issued.token) == 48


async def test_consume_valid_token(invitations, db):
    issued = await invitations.create("alice@example.com", Role.EDITOR.value)
    await db.commit()
    found = await invitations.consume(issued.token)
    assert found is not None
    assert found.role == Role.EDITOR.value


async def test_consume_rejects_unknown_and_empty(invitations):
    assert await invitations.consume(None) is None
    assert await invitations.consume("") is None
    assert await invitations.consume("deadbeef") is None


async def test_consume_rejects_expired(invitations, db, clock):
    issued = await invitations.create("alice@example.com", Role.EDITOR.value)
    await db.commit()
    clock.now += timedelta(days=7, seconds=1)
    assert await invitations.consume(issued.token) is None


async def test_second_invitation_supersedes_first(invitations, db):
    first = await invitations.create("alice@example.com", Role.EDITOR.value)
    second = await invitations.create("ALICE@example.com", Role.VIEWER.value)
    await db.commit()
    assert await invitations.consume(first.token) is None
    assert (await invitations.consume(second.token)).role == Role.VIEWER.value


async def test_consume_rejects_revoked(invitations, db):
    issued = await invitations.create("alice@example.com", Role.EDITOR.value)
    await invitations.revoke(issued.invitation.id)
    await db.commit()
    assert await invitations.consume(issued.token) is None


async def test_revoke_unknown_returns_none(invitations):
    assert await invitations.revoke(12345) is None


async def test_accept_is_single_use(invitations, db):
    issued = await invitations.create("alice@example.com", Role.EDITOR.value)
    await db.commit()
    invitation = await invitations.consume(issued.token)
    assert await invitations.mark_accepted(invitation.id) is True
    assert await invitations.mark_accepted(invitation.id) is False
    await db.commit()
    assert await invitations.consume(issued.token) is None


async def test_reap_expired_keeps_accepted_history(invitations, db, clock):
    await invitations.create("pending@example.com", Role.VIEWER.value)
    accepted = await invitations.create("accepted@example.com", Role.VIEWER.value)
    revoked = await invitations.create("revoked@example.com", Role.VIEWER.value)
    await invitations.mark_accepted(accepted.invitation.id)
    await invitations.revoke(revoked.invitation.id)
    await db.commit()

    assert await invitations.reap_expired() == 0
    clock.now += timedelta(days=8)
    assert await invitations.reap_expired() == 2
    await db.commit()

    remaining = (await db.execute(select(Invitation.email))).scalars().all()
    assert remaining == ["accepted@example.com"]
    assert await db.scalar(select(func.count()).select_from(Invitation)) == 1


async def test_list_all_newest_first(invitations, db, clock):
    await invitations.create("one@example.com", Role.VIEWER.value)
    clock.now += timedelta(minutes=1)
    await invitations.create("two@example.com", Role.VIEWER.value)
    await db.commit()
    emails = [i.email for i in await invitations.list_all()]
    assert emails == ["two@example.com", "one@example.com"]
