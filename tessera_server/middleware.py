# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Request gatekeeper: CSRF cookie, API authentication, CSRF checks and security headers.

Every response leaves through here, so headers are applied to errors too.
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from tessera_server.csrf import (
    CSRF_COOKIE_NAME,
    generate_csrf_token,
    is_csrf_exempt,
    requires_csrf_validation,
    set_csrf_cookie,
    validate_csrf,
)
from tessera_server.database import get_session_maker
from tessera_server.dependencies import SESSION_COOKIE_NAME, get_cleanup
from tessera_server.security_headers import headers_for_path
from tessera_server.services.sessions import ResolvedSession, SessionManager

logger = logging.getLogger(__name__)

# Under /api these guard themselves (login and invitation acceptance are public)
SELF_GUARDED_PREFIX = "/api/auth/"
PUBLIC_API_PATHS = frozenset({"/api/health"})


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


def requires_session(path: str) -> bool:
    """Paths the gatekeeper authenticates before any handler runs."""
    if not is_api_path(path):
        return False
    if path.startswith(SELF_GUARDED_PREFIX) or path.rstrip("/") in PUBLIC_API_PATHS:
        return False
    return True


async def resolve_session(request: Request) -> ResolvedSession | None:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    async with get_session_maker(request.app)() as db:
        return await SessionManager(db, cleanup=get_cleanup(request)).resolve(token)


async def gatekeeper(request: Request, call_next):
    path = request.url.path
    issued_csrf = None
    csrf_token = request.cookies.get(CSRF_COOKIE_NAME)
    if not csrf_token:
        csrf_token = issued_csrf = generate_csrf_token()
    request.state.csrf_token = csrf_token

    try:
        if requires_session(path):
            auth = await resolve_session(request)
            request.state.auth = auth
            request.state.auth_resolved = True
            if auth is None:
                response = JSONResponse({"detail": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)
                return _finish(path, response, issued_csrf)

        if (
            is_api_path(path)
            and requires_csrf_validation(request.method)
            and not is_csrf_exempt(path)
            and not await validate_csrf(request)
        ):
            logger.warning("CSRF check failed: %s %s", request.method, path)
            response = JSONResponse({"detail": "Invalid CSRF token"}, status_code=status.HTTP_403_FORBIDDEN)
            return _finish(path, response, issued_csrf)

        response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, path)
        response = JSONResponse(
            {"detail": "Internal Server Error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return _finish(path, response, issued_csrf)


def _finish(path: str, response, issued_csrf: str | None):
    for name, value in headers_for_path(path).items():
        response.headers[name] = value
    if issued_csrf:
        set_csrf_cookie(response, issued_csrf)
    return response
