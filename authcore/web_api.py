"""FastAPI application factory wiring storage, services and routes."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authcore import __version__
from authcore.api.contracts import HealthResponse
from authcore.api.http_setup import register_exception_handlers, register_http_middleware
from authcore.auth.challenges import ChallengeEngine
from authcore.auth.middleware import create_session_resolver
from authcore.auth.notifications import (
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationSender,
)
from authcore.auth.rate_limiter import RateLimiter
from authcore.auth.repository import CredentialStore
from authcore.auth.router import create_auth_router
from authcore.auth.service import AuthService
from authcore.auth.sessions import SessionManager
from authcore.auth.social import ProviderTokenVerifier
from authcore.core.config import AppConfig
from authcore.core.logging import setup_logging
from authcore.core.migrations import apply_migrations
from authcore.core.state_db import StateDatabase

LOGGER = logging.getLogger(__name__)


def build_auth_service(
    config: AppConfig,
    *,
    sender: NotificationSender | None = None,
    provider_verifier: ProviderTokenVerifier | None = None,
) -> tuple[AuthService, StateDatabase, NotificationDispatcher]:
    """Open runtime storage and compose the authentication service."""
    state_db_path = Path(config.storage.sqlite_path).resolve()
    apply_migrations(state_db_path)
    state_db = StateDatabase(
        state_db_path, busy_timeout_seconds=config.storage.busy_timeout_seconds
    )
    dispatcher = NotificationDispatcher(
        sender or LoggingNotificationSender(),
        timeout_seconds=config.auth.delivery_timeout_seconds,
    )
    service = AuthService(
        config=config.auth,
        store=CredentialStore(
            state_db,
            mongo_uri=config.storage.mongo_uri,
            mongo_db=config.storage.mongo_db,
        ),
        sessions=SessionManager(state_db, config.auth),
        challenges=ChallengeEngine(state_db, config.auth),
        rate_limiter=RateLimiter(state_db, config.security.rate_limits),
        dispatcher=dispatcher,
        provider_verifier=provider_verifier,
    )
    return service, state_db, dispatcher


def create_app(
    config: AppConfig | None = None,
    *,
    sender: NotificationSender | None = None,
    provider_verifier: ProviderTokenVerifier | None = None,
) -> FastAPI:
    """Build the HTTP application; reads configuration from the environment by default."""
    if config is None:
        load_dotenv()
        config = AppConfig.from_env()
    setup_logging(config.logging.level)

    service, state_db, dispatcher = build_auth_service(
        config, sender=sender, provider_verifier=provider_verifier
    )

    app = FastAPI(title="Auth Core API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["set-auth-token"],
    )
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)

    app.include_router(
        create_auth_router(
            service,
            create_session_resolver(service),
            trusted_origins=config.security.cors_allowed_origins,
        )
    )

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.on_event("shutdown")
    def close_resources() -> None:
        dispatcher.close()
        state_db.close()

    app.state.auth_service = service
    return app
