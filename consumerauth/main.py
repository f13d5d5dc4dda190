import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from consumerauth import __version__
from consumerauth.database import init_db
from consumerauth.models import *  # noqa: F403

APP_VERSION = __version__
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables
    await init_db()
    from consumerauth.database import async_session

    # Drop expired request tokens and nonces outside the timestamp window
    async def _token_purge_loop() -> None:
        await asyncio.sleep(60)
        while True:
            try:
                from consumerauth.oauth1.data_store import purge_expired

                async with async_session() as db:
                    await purge_expired(db, datetime.now(timezone.utc))
            except Exception:
                logger.exception("Background task error")
            await asyncio.sleep(3600)

    purge_task = asyncio.create_task(_token_purge_loop())

    yield

    # Shutdown: cancel the purge, let notifications finish, dispose connection pool
    purge_task.cancel()

    from consumerauth.services.notification_service import drain_notifications

    await drain_notifications(timeout_seconds=5.0)

    from consumerauth.database import dispose_engine

    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Cache-Control"] = "no-store"
        return response


def create_app() -> FastAPI:
    app = FastAPI(
        title="OAuth Consumer Authorization",
        description="Consumer registration, review and OAuth 1.0a token exchange",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    from consumerauth.config import settings

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    # Identity-substitution hooks run during authorization; deployments append to this
    app.state.oauth_user_hooks = []

    # Register REST routers
    from consumerauth.api import API_PREFIX, API_ROUTERS
    from consumerauth.oauth1.routes import router as oauth_router

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)
    app.include_router(oauth_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "name": "OAuth Consumer Authorization",
            "version": APP_VERSION,
            "docs": "/docs",
            "health": f"{API_PREFIX}/health",
            "oauth": "/oauth/initiate",
        }

    return app


app = create_app()
