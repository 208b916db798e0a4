"""
OAuth Connector Lifecycle Manager — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import Settings, config
from connectors.base import BaseOAuthClient
from connectors.catalog import load_catalog
from connectors.encryption import TokenCipher
from connectors.oauth_client import HttpOAuthClient
from connectors.routes import router as connectors_router
from connectors.service import ConnectorService
from connectors.sql_store import SqlCredentialStore, SqlStateStore
from connectors.store import CredentialStore, StateStore
from connectors.sweeper import RefreshSweeper
from database.session import build_engine, build_session_factory, init_models

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    oauth_client: Optional[BaseOAuthClient] = None,
    credentials: Optional[CredentialStore] = None,
    states: Optional[StateStore] = None,
) -> FastAPI:
    settings = settings or config

    app = FastAPI(
        title="OAuth Connector Lifecycle Manager",
        version="1.0.0",
        description="Per-user OAuth connections to third-party providers.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Connector core
    catalog = load_catalog(settings)
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    cipher = TokenCipher(settings.token_encryption_key)

    service = ConnectorService.from_settings(
        settings,
        catalog,
        credentials or SqlCredentialStore(session_factory, cipher),
        states or SqlStateStore(session_factory),
        oauth_client or HttpOAuthClient(timeout=settings.provider_timeout_seconds),
    )
    sweeper = RefreshSweeper(service, settings.refresh_sweep_interval_seconds)

    app.state.settings = settings
    app.state.connector_service = service
    app.state.sweeper = sweeper

    # Routes
    app.include_router(connectors_router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "providers": len(catalog)}

    @app.on_event("startup")
    async def on_startup():
        logger.info("Creating connector tables…")
        await init_models(engine)
        sweeper.start()
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await sweeper.stop()
        await service.aclose()
        await engine.dispose()
        logger.info("Application shut down.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
