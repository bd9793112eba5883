# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account model."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from tessera_server.models.base import Base
from tessera_server.models.timestamp import TimestampMixin, UpdatedAtMixin


class Role(str, enum.Enum):
    """Account roles. SUPER_ADMIN is the elevated-admin role."""

    SUPER_ADMIN = "super_admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class Account(Base, TimestampMixin, UpdatedAtMixin):
    """Back-office account. Email is stored normalized (trimmed, lowercased)."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), default=Role.VIEWER.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
