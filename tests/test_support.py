# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""CSRF helpers, invitation email and the admin bootstrap script."""

import pytest

from tessera_server.auth import verify_password
from tessera_server.config import settings
from tessera_server.csrf import is_csrf_exempt, requires_csrf_validation, tokens_match
from tessera_server.models import Role
from tessera_server.scripts.create_admin import create_admin
from tessera_server.services import email
from tessera_server.services.accounts import AccountStore


@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "get"])
def test_safe_methods_skip_csrf(method):
    assert not requires_csrf_validation(method)


@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
def test_mutating_methods_need_csrf(method):
    assert requires_csrf_validation(method)


def test_exempt_paths():
    assert is_csrf_exempt("/api/auth/login")
    assert is_csrf_exempt("/api/auth/invitations/accept/")
    assert not is_csrf_exempt("/api/auth/logout")
    assert not is_csrf_exempt("/api/auth/invitations")


def test_tokens_match_is_exact():
    assert tokens_match("abc123", "abc123")
    assert not tokens_match("abc123", "abc124")
    assert not tokens_match("abc123", "ABC123")
    assert not tokens_match("abc123", None)
    assert not tokens_match(None, None)
    assert not tokens_match("", "")


def test_invitation_link(monkeypatch):
    monkeypatch.setattr(settings, "app_base_url", "https://cms.example.com/")
    assert email.invitation_link("t0k") == "https://cms.example.com/accept-invitation?token=t0k"


@pytest.mark.anyio
async def test_email_without_smtp_is_not_sent():
    assert settings.smtp_host is None
    assert await email.send_invitation_email("a@example.com", "t0k", 7) is False


@pytest.mark.anyio
async def test_email_delivery_failure_is_reported_not_raised(monkeypatch):
    sent = []

    def fake_send(to, subject, body):
        sent.append((to, subject, body))
        raise OSError("connection refused")

    monkeypatch.setattr(settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(settings, "smtp_user", "mailer")
    monkeypatch.setattr(email, "_send_smtp", fake_send)
    assert await email.send_invitation_email("a@example.com", "t0k", 7) is False
    [(to, _, body)] = sent
    assert to == "a@example.com"
    assert "accept-invitation?token=t0k" in body
    assert "7 days" in body


@pytest.mark.anyio
async def test_create_admin(db):
    account = await create_admin(db, "Root@Example.com", "vK7#qLp2!zRw9@mX", name="Root")
    assert account.role == Role.SUPER_ADMIN.value
    stored = await AccountStore(db).get_by_email("root@example.com")
    assert verify_password("vK7#qLp2!zRw9@mX", stored.password_hash)

    with pytest.raises(ValueError, match="already exists"):
        await create_admin(db, "root@example.com", "vK7#qLp2!zRw9@mX")


@pytest.mark.anyio
async def test_create_admin_enforces_policy(db):
    with pytest.raises(ValueError):
        await create_admin(db, "root@example.com", "Password123!")
