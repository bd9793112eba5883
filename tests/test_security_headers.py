# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Security header composition."""

import pytest

from tessera_server.config import settings
from tessera_server.security_headers import (
    ContentSecurityPolicy,
    HeaderProfile,
    SecurityHeadersConfig,
    api_config,
    build_csp,
    build_headers,
    config_for_profile,
    default_config,
    headers_for_path,
    profile_for_path,
    relaxed_config,
)


def _directives(csp: str) -> dict[str, list[str]]:
    out = {}
    for part in csp.split(";"):
        tokens = part.split()
        if tokens:
            out[tokens[0]] = tokens[1:]
    return out


def test_default_profile_headers():
    headers = build_headers(default_config())
    assert headers["X-Content-Type-Options"] == "nosniff"
    assert headers["X-Frame-Options"] == "DENY"
    assert headers["X-XSS-Protection"] == "1; mode=block"
    assert headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert headers["Cross-Origin-Opener-Policy"] == "same-origin"
    assert headers["Cross-Origin-Resource-Policy"] == "same-origin"
    assert headers["Cache-Control"].startswith("no-store")
    assert "fullscreen=(self)" in headers["Permissions-Policy"]
    assert "camera=()" in headers["Permissions-Policy"]
    directives = _directives(headers["Content-Security-Policy"])
    assert directives["frame-ancestors"] == ["'none'"]
    assert directives["object-src"] == ["'none'"]
    assert "https://fonts.googleapis.com" in directives["style-src"]
    assert "upgrade-insecure-requests" in directives


def test_build_is_deterministic():
    config = default_config()
    assert build_headers(config) == build_headers(config)


def test_hsts_only_when_enabled():
    assert "Strict-Transport-Security" not in build_headers(SecurityHeadersConfig())
    headers = build_headers(SecurityHeadersConfig(enable_hsts=True, hsts_max_age=600, hsts_preload=True))
    assert headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains; preload"


def test_api_profile_locks_down_scripts_and_styles():
    directives = _directives(build_headers(api_config())["Content-Security-Policy"])
    assert directives["script-src"] == ["'none'"]
    assert directives["style-src"] == ["'none'"]


def test_relaxed_profile_allows_same_origin_framing():
    headers = build_headers(relaxed_config())
    assert headers["X-Frame-Options"] == "SAMEORIGIN"
    assert _directives(headers["Content-Security-Policy"])["frame-ancestors"] == ["'self'"]


def test_unsafe_sources_are_dropped():
    csp = ContentSecurityPolicy(
        default_src=("'self'", "data:", "'unsafe-eval'"),
        script_src=("'self'", "'unsafe-eval'", "data:", "javascript:", "https://cdn.example.com"),
        img_src=("'self'", "data:", "'unsafe-eval'"),
    )
    directives = _directives(build_csp(csp))
    assert directives["default-src"] == ["'self'"]
    assert directives["script-src"] == ["'self'", "https://cdn.example.com"]
    # data: stays legal for images
    assert directives["img-src"] == ["'self'", "data:"]


def test_unsafe_sources_inside_multi_token_entries_are_dropped():
    csp = ContentSecurityPolicy(
        default_src=("'self' data:",),
        script_src=("'self' 'unsafe-eval' data:", " javascript:alert(1)  https://cdn.example.com "),
        style_src=("'self' 'UNSAFE-EVAL'",),
    )
    directives = _directives(build_csp(csp))
    assert directives["default-src"] == ["'self'"]
    assert directives["script-src"] == ["'self'", "https://cdn.example.com"]
    assert directives["style-src"] == ["'self'"]


def test_env_sources_cannot_smuggle_unsafe_eval(monkeypatch):
    monkeypatch.setattr(settings, "csp_style_sources", ["https://fonts.example.com 'unsafe-eval'"])
    monkeypatch.setattr(settings, "csp_font_sources", ["'unsafe-eval' https://fonts.example.com"])
    csp = build_headers(default_config())["Content-Security-Policy"]
    assert "unsafe-eval" not in csp
    directives = _directives(csp)
    assert directives["style-src"] == ["'self'", "https://fonts.example.com"]
    assert directives["font-src"] == ["'self'", "https://fonts.example.com"]


def test_empty_directive_is_omitted():
    directives = _directives(build_csp(ContentSecurityPolicy(media_src=())))
    assert "media-src" not in directives


@pytest.mark.parametrize("profile", list(HeaderProfile))
def test_no_profile_emits_unsafe_script_sources(profile):
    csp = build_headers(config_for_profile(profile))["Content-Security-Policy"]
    assert "unsafe-eval" not in csp
    directives = _directives(csp)
    for name in ("default-src", "script-src"):
        assert not any(s.startswith("data:") for s in directives.get(name, []))


@pytest.mark.parametrize(
    "path, profile",
    [
        ("/api/auth/login", HeaderProfile.API),
        ("/api", HeaderProfile.API),
        ("/apis", HeaderProfile.DEFAULT),
        ("/uploads/logo.png", HeaderProfile.RELAXED),
        ("/files/report.pdf", HeaderProfile.RELAXED),
        ("/_assets/app.js", HeaderProfile.RELAXED),
        ("/admin", HeaderProfile.DEFAULT),
        ("/", HeaderProfile.DEFAULT),
    ],
)
def test_profile_for_path(path, profile):
    assert profile_for_path(path) == profile


def test_headers_for_path_matches_profile():
    assert headers_for_path("/api/health") == build_headers(api_config())
