# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Double-submit-cookie CSRF protection.

The token lives in a script-readable cookie set on first contact, independent of
any login. State-changing requests must echo it in the X-CSRF-Token header or a
``csrf_token`` form field.
"""

import hmac

from fastapi import Request, Response
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException

from tessera_server.auth import generate_token
from tessera_server.config import settings

CSRF_COOKIE_NAME = "tessera_csrf"
CSRF_HEADER_NAME = "x-csrf-token"
CSRF_FORM_FIELD = "csrf_token"
CSRF_COOKIE_MAX_AGE = 60 * 60 * 24

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

# Callers on these paths have no prior token relationship with us yet.
CSRF_EXEMPT_PATHS = frozenset({"/api/auth/login", "/api/auth/invitations/accept"})


FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def generate_csrf_token() -> str:
    return generate_token(32)


def requires_csrf_validation(method: str) -> bool:
    return method.upper() not in SAFE_METHODS


def is_csrf_exempt(path: str) -> bool:
    return path.rstrip("/") in CSRF_EXEMPT_PATHS


def tokens_match(cookie_token: str | None, echoed_token: str | None) -> bool:
    """Constant-time, byte-for-byte comparison. Missing on either side never matches."""
    if not cookie_token or not echoed_token:
        return False
    return hmac.compare_digest(cookie_token.encode("utf-8"), echoed_token.encode("utf-8"))


async def get_echoed_token(request: Request) -> str | None:
    """Token echoed by the client: header first, then a urlencoded or multipart form field."""
    header = request.headers.get(CSRF_HEADER_NAME)
    if header:
        return header
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        # Buffer the body first so the route handler can still read it
        await request.body()
        try:
            form = await request.form()
        except (HTTPException, MultiPartException):
            return None
        value = form.get(CSRF_FORM_FIELD)
        if isinstance(value, str) and value:
            return value
    return None


async def validate_csrf(request: Request) -> bool:
    return tokens_match(request.cookies.get(CSRF_COOKIE_NAME), await get_echoed_token(request))


def set_csrf_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        max_age=CSRF_COOKIE_MAX_AGE,
        path="/",
        httponly=False,  # the client must read it to echo it
        samesite="strict",
        secure=settings.secure_cookies,
    )
