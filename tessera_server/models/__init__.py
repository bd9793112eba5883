# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from tessera_server.models.base import Base
from tessera_server.models.account import Account, Role
from tessera_server.models.session import AuthSession
from tessera_server.models.invitation import Invitation
from tessera_server.models.audit_log import AuditAction, AuditLog, AuditStatus

__all__ = [
    "Base",
    "Account",
    "Role",
    "AuthSession",
    "Invitation",
    "AuditAction",
    "AuditLog",
    "AuditStatus",
]
