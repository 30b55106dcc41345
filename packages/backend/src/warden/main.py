"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan seeds and loads the role → permission table before the
first request; every WardenError raised below a route is rendered by one
exception handler.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warden import __version__
from warden.api import api_router
from warden.config import settings
from warden.errors import AuthError, WardenError

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "warden.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from warden.db.engine import async_session_factory, engine
    from warden.services.credential_store import warm_dummy_hash
    from warden.services.permission_resolver import (
        load_role_permissions,
        seed_role_permissions,
    )

    async with async_session_factory() as session:
        await seed_role_permissions(session)
        await load_role_permissions(session)
    await warm_dummy_hash(settings)

    yield

    logger.info("warden.shutdown")
    await engine.dispose()


async def warden_error_handler(request: Request, exc: WardenError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    if isinstance(exc, AuthError):
        logger.info("request.denied", error=type(exc).__name__, path=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=headers,
    )


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Warden",
        description="Identity, credential and authorization core",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → CORS → handler

    from warden.middleware.request_id import RequestIdMiddleware
    from warden.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(WardenError, warden_error_handler)
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: warden.main:app)
app = create_app()
