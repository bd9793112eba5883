# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Configuration for Tessera CMS Server."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite+aiosqlite:///./tessera.db"

    # "production" turns on secure cookies
    environment: str = "development"

    # Sessions and invitations
    session_secret: str = "change-me-in-production"
    session_ttl_hours: int = 24
    invite_expiration_days: int = 7

    # Login throttling: max attempts per window per client address
    login_rate_limit_max: int = 5
    login_rate_limit_window_seconds: int = 900

    # Opportunistic cleanup of expired sessions/invitations
    cleanup_interval_seconds: int = 3600
    cleanup_probability: float = 0.01
    # Bearer secret for POST /internal/cleanup (cron). Endpoint disabled when unset.
    cleanup_secret: str | None = None

    # Security headers. Only enable HSTS behind a confirmed HTTPS terminator.
    https_terminated: bool = False
    hsts_max_age: int = 31536000
    hsts_include_subdomains: bool = True
    hsts_preload: bool = False
    csp_style_sources: list[str] = ["https://fonts.googleapis.com"]
    csp_font_sources: list[str] = ["https://fonts.gstatic.com"]

    # CORS: comma-separated origins. "*" is ignored since credentials are allowed.
    cors_origins: str = "http://localhost:4321,http://localhost:3000,http://127.0.0.1:4321"

    # Password policy (zxcvbn score 0-4)
    min_password_score: int = 3

    # Email (invitation delivery)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    mail_from: str = "noreply@tessera.local"
    app_base_url: str = "http://localhost:8080"

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"

    @property
    def invite_days(self) -> int:
        return self.invite_expiration_days if self.invite_expiration_days > 0 else 7


settings = Settings()
