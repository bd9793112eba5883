# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Tessera CMS Server - Main FastAPI application."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tessera_server.config import settings
from tessera_server.csrf import CSRF_HEADER_NAME
from tessera_server.database import async_session_maker, init_db
from tessera_server.middleware import gatekeeper
from tessera_server.rate_limit import login_limiter_from_settings
from tessera_server.routers import admin, audit, auth, internal, invitations, sessions, users
from tessera_server.services.sessions import OpportunisticCleanup

logger = logging.getLogger(__name__)


def _get_cors_origins() -> list[str]:
    # Credentials are allowed, so a wildcard origin is never honoured
    return [o.strip() for o in (settings.cors_origins or "").split(",") if o.strip() and o.strip() != "*"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    if settings.session_secret == "change-me-in-production":
        logger.warning("SESSION_SECRET is the default placeholder; set it before deploying")
    app.state.session_maker = async_session_maker
    app.state.login_limiter = login_limiter_from_settings()
    app.state.cleanup = OpportunisticCleanup(async_session_maker)
    yield
    # shutdown


app = FastAPI(
    title="Tessera CMS Server",
    description="Authentication and request security for the Tessera back office",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.middleware("http")(gatekeeper)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body, cookies or auth headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


# Outermost, so preflight requests are answered before the gatekeeper sees them
app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", CSRF_HEADER_NAME],
)

app.include_router(auth.router, prefix="/api")
app.include_router(sessions.router, prefix="/api")
app.include_router(invitations.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(admin.router, prefix="/api")
app.include_router(audit.router, prefix="/api")
app.include_router(internal.router)


@app.get("/")
async def root():
    """API info."""
    return {
        "name": "Tessera CMS Server",
        "version": "0.1.0",
        "api": "/api",
        "docs": "/api/docs",
    }


@app.get("/api/health")
async def health():
    """Health check for load balancers."""
    return {"status": "ok"}
