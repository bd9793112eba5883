# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Security response headers (OWASP secure headers), composed per route class.

build_headers() is pure: the same config always produces the same header map.
Three profiles exist: DEFAULT for HTML admin pages, API for JSON routes and
RELAXED for publicly served uploads that admin previews embed in frames.
"""

import enum
import logging
from dataclasses import dataclass, field, fields, replace

from tessera_server.config import settings

logger = logging.getLogger(__name__)

# Never emitted, whatever the config says
FORBIDDEN_SOURCES = frozenset({"'unsafe-eval'", "unsafe-eval"})
# Additionally stripped from directives that govern script execution
FORBIDDEN_SCRIPT_SCHEMES = ("data:", "javascript:")
SCRIPT_DIRECTIVES = frozenset({"default_src", "script_src"})

RELAXED_PATH_PREFIXES = ("/uploads/", "/files/", "/_assets/")


class HeaderProfile(str, enum.Enum):
    DEFAULT = "default"
    API = "api"
    RELAXED = "relaxed"


@dataclass(frozen=True)
class ContentSecurityPolicy:
    default_src: tuple[str, ...] = ("'self'",)
    script_src: tuple[str, ...] = ("'self'",)
    style_src: tuple[str, ...] = ("'self'",)
    img_src: tuple[str, ...] = ("'self'", "data:", "blob:")
    font_src: tuple[str, ...] = ("'self'",)
    connect_src: tuple[str, ...] = ("'self'",)
    media_src: tuple[str, ...] = ("'self'",)
    object_src: tuple[str, ...] = ("'none'",)
    frame_src: tuple[str, ...] = ("'none'",)
    frame_ancestors: tuple[str, ...] = ("'none'",)
    base_uri: tuple[str, ...] = ("'self'",)
    form_action: tuple[str, ...] = ("'self'",)
    upgrade_insecure_requests: bool = True


@dataclass(frozen=True)
class PermissionsPolicy:
    camera: tuple[str, ...] = ()
    microphone: tuple[str, ...] = ()
    geolocation: tuple[str, ...] = ()
    payment: tuple[str, ...] = ()
    usb: tuple[str, ...] = ()
    fullscreen: tuple[str, ...] = ("self",)
    accelerometer: tuple[str, ...] = ()
    gyroscope: tuple[str, ...] = ()
    magnetometer: tuple[str, ...] = ()


@dataclass(frozen=True)
class SecurityHeadersConfig:
    csp: ContentSecurityPolicy = field(default_factory=ContentSecurityPolicy)
    permissions_policy: PermissionsPolicy | None = field(default_factory=PermissionsPolicy)
    # "none" -> DENY, "self" -> SAMEORIGIN, None -> header omitted
    frame_options: str | None = "none"
    content_type_options: bool = True
    xss_protection: bool = True
    referrer_policy: str | None = "strict-origin-when-cross-origin"
    no_store: bool = True
    cross_origin_opener_policy: str | None = "same-origin"
    cross_origin_resource_policy: str | None = "same-origin"
    enable_hsts: bool = False
    hsts_max_age: int = 31536000
    hsts_include_subdomains: bool = True
    hsts_preload: bool = False


def _safe_sources(directive: str, sources: tuple[str, ...]) -> list[str]:
    kept = []
    # An entry may hold several space-separated sources; each is judged alone
    for source in (token for entry in sources for token in entry.split()):
        lowered = source.lower()
        if lowered in FORBIDDEN_SOURCES or (
            directive in SCRIPT_DIRECTIVES and lowered.startswith(FORBIDDEN_SCRIPT_SCHEMES)
        ):
            logger.warning("Dropping unsafe CSP source %s from %s", source, directive)
            continue
        kept.append(source)
    return kept


def build_csp(csp: ContentSecurityPolicy) -> str:
    """Serialize a CSP. Empty directives are skipped, unsafe sources are dropped."""
    directives = []
    for f in fields(csp):
        if f.name == "upgrade_insecure_requests":
            continue
        sources = _safe_sources(f.name, getattr(csp, f.name))
        if sources:
            directives.append(f"{f.name.replace('_', '-')} {' '.join(sources)}")
    if csp.upgrade_insecure_requests:
        directives.append("upgrade-insecure-requests")
    return "; ".join(directives)


def build_permissions_policy(policy: PermissionsPolicy) -> str:
    parts = []
    for f in fields(policy):
        allowlist = getattr(policy, f.name)
        parts.append(f"{f.name.replace('_', '-')}=({' '.join(allowlist)})")
    return ", ".join(parts)


def build_hsts(config: SecurityHeadersConfig) -> str:
    value = f"max-age={config.hsts_max_age}"
    if config.hsts_include_subdomains:
        value += "; includeSubDomains"
    if config.hsts_preload:
        value += "; preload"
    return value


def build_frame_options(frame_options: str) -> str:
    # X-Frame-Options cannot name origins; anything but "self" falls back to DENY.
    return "SAMEORIGIN" if frame_options == "self" else "DENY"


def build_headers(config: SecurityHeadersConfig) -> dict[str, str]:
    headers: dict[str, str] = {}
    if config.content_type_options:
        headers["X-Content-Type-Options"] = "nosniff"
    if config.xss_protection:
        headers["X-XSS-Protection"] = "1; mode=block"
    if config.frame_options:
        headers["X-Frame-Options"] = build_frame_options(config.frame_options)
    csp = build_csp(config.csp)
    if csp:
        headers["Content-Security-Policy"] = csp
    if config.permissions_policy is not None:
        headers["Permissions-Policy"] = build_permissions_policy(config.permissions_policy)
    if config.referrer_policy:
        headers["Referrer-Policy"] = config.referrer_policy
    if config.no_store:
        headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate"
        headers["Pragma"] = "no-cache"
        headers["Expires"] = "0"
    if config.cross_origin_opener_policy:
        headers["Cross-Origin-Opener-Policy"] = config.cross_origin_opener_policy
    if config.cross_origin_resource_policy:
        headers["Cross-Origin-Resource-Policy"] = config.cross_origin_resource_policy
    if config.enable_hsts:
        headers["Strict-Transport-Security"] = build_hsts(config)
    return headers


def default_config() -> SecurityHeadersConfig:
    """HTML admin profile, with CDN sources and HSTS taken from settings."""
    return SecurityHeadersConfig(
        csp=ContentSecurityPolicy(
            style_src=("'self'", *settings.csp_style_sources),
            font_src=("'self'", *settings.csp_font_sources),
        ),
        enable_hsts=settings.https_terminated,
        hsts_max_age=settings.hsts_max_age,
        hsts_include_subdomains=settings.hsts_include_subdomains,
        hsts_preload=settings.hsts_preload,
    )


def api_config(base: SecurityHeadersConfig | None = None) -> SecurityHeadersConfig:
    """JSON routes never serve markup, so scripts and styles collapse to 'none'."""
    base = base or default_config()
    return replace(base, csp=replace(base.csp, script_src=("'none'",), style_src=("'none'",)))


def relaxed_config(base: SecurityHeadersConfig | None = None) -> SecurityHeadersConfig:
    """Uploaded assets may be framed by our own admin previews, nothing else changes."""
    base = base or default_config()
    return replace(base, frame_options="self", csp=replace(base.csp, frame_ancestors=("'self'",)))


def profile_for_path(path: str) -> HeaderProfile:
    if path == "/api" or path.startswith("/api/"):
        return HeaderProfile.API
    if path.startswith(RELAXED_PATH_PREFIXES):
        return HeaderProfile.RELAXED
    return HeaderProfile.DEFAULT


def config_for_profile(profile: HeaderProfile) -> SecurityHeadersConfig:
    if profile == HeaderProfile.API:
        return api_config()
    if profile == HeaderProfile.RELAXED:
        return relaxed_config()
    return default_config()


def headers_for_path(path: str) -> dict[str, str]:
    return build_headers(config_for_profile(profile_for_path(path)))
