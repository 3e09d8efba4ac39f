"""
FastAPI Authentication Broker Application Factory
=================================================

This is the main entry point for the broker that sits between mobile/web
clients and the OpenID Connect identity provider.

Architecture:
    Mobile/Web Apps → Broker (this service) → Identity Provider

Routers:
    - /auth/*       : Authorization flow (initialize, callback, exchange,
                      refresh, polling, me, logout)
    - /user/*       : Authenticated user endpoints (extended info)
    - /health       : Health check endpoints

Environment Variables Required:
    - IDP_CLIENT_ID: OAuth client ID at the identity provider
    - IDP_CLIENT_SECRET: OAuth client secret
    - JWT_SECRET: Secret for signing access/refresh tokens (32+ chars)
    See authbroker/app/config.py for the optional ones.

Running the Service:
    Development:
        uvicorn authbroker.app.main:create_app --factory --reload --port 3000

    Production:
        uvicorn authbroker.app.main:create_app --factory --host 0.0.0.0 --port 3000

Sessions live in process memory, so run a single worker.
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .auth.polling import InMemoryPollingSessionStore, PollingSessionStore
from .auth.provider import IdentityProviderClient
from .auth.routes import auth_router
from .auth.service import AuthService
from .auth.session_store import (
    AuthorizationSessionStore,
    InMemoryAuthorizationSessionStore,
    run_periodic_sweep,
)
from .auth.tokens import CredentialCodec
from .config import Settings, get_settings, validate_configuration
from .errors import register_exception_handlers
from .models import HealthResponse
from .user.routes import user_router

logger = logging.getLogger("authbroker.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


class AppState:
    """
    Application state container.

    Holds the long-lived components shared by all requests. The session
    stores are owned exclusively by this instance.
    """

    def __init__(
        self,
        settings: Settings,
        auth_service: AuthService,
        session_store: AuthorizationSessionStore,
        polling_store: PollingSessionStore,
    ):
        self.settings = settings
        self.auth_service = auth_service
        self.session_store = session_store
        self.polling_store = polling_store
        self.started_at = time.time()
        self.sweepers: List[asyncio.Task] = []


def build_app_state(
    settings: Settings,
    provider_client: Optional[httpx.AsyncClient] = None,
) -> AppState:
    """Wire the codec, stores, provider adapter and orchestrator."""
    session_store = InMemoryAuthorizationSessionStore(ttl_seconds=settings.AUTH_SESSION_TTL_SECONDS)
    polling_store = InMemoryPollingSessionStore(ttl_seconds=settings.POLLING_SESSION_TTL_SECONDS)
    codec = CredentialCodec(
        settings.JWT_SECRET,
        access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRY_MINUTES),
        refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRY_DAYS),
    )
    service = AuthService(
        provider=IdentityProviderClient(settings, client=provider_client),
        codec=codec,
        sessions=session_store,
        polling=polling_store,
    )
    return AppState(settings, service, session_store, polling_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: validate configuration, start the session sweepers.
    Shutdown: stop the sweepers, close the provider HTTP client.
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    app_state.sweepers = [
        asyncio.create_task(
            run_periodic_sweep(app_state.session_store, settings.AUTH_SESSION_SWEEP_SECONDS, "session")
        ),
        asyncio.create_task(
            run_periodic_sweep(app_state.polling_store, settings.POLLING_SESSION_SWEEP_SECONDS, "polling")
        ),
    ]

    logger.info(
        "Auth broker started",
        extra={"environment": settings.ENVIRONMENT, "idp_base_url": settings.idp_base_url},
    )

    yield

    logger.info("Shutting down auth broker")
    for task in app_state.sweepers:
        task.cancel()
    for task in app_state.sweepers:
        with suppress(asyncio.CancelledError):
            await task
    await app_state.auth_service.provider.aclose()
    logger.info("Auth broker shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    provider_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (defaults to the environment)
        provider_client: HTTP client for the identity provider (tests inject
                         one backed by ``httpx.MockTransport``)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Auth Broker",
        description="OAuth 2.0 / OIDC authentication broker for mobile and web clients",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.app_state = build_app_state(settings, provider_client)

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )

    register_exception_handlers(app, development=settings.is_development)

    app.include_router(auth_router)
    app.include_router(user_router)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request) -> HealthResponse:
        """Service status and session store statistics."""
        state: AppState = request.app.state.app_state
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            uptime=time.time() - state.started_at,
            environment=state.settings.ENVIRONMENT,
            sessions={
                "authorization": await state.session_store.stats(),
                "polling": await state.polling_store.stats(),
            },
        )

    @app.get("/health/provider", tags=["System"])
    async def provider_health(request: Request):
        """Reachability of the identity provider's discovery document."""
        state: AppState = request.app.state.app_state
        document = await state.auth_service.provider.fetch_discovery_document()
        return {
            "status": "healthy",
            "issuer": document.get("issuer"),
            "userinfo_endpoint": document.get("userinfo_endpoint"),
        }

    return app


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    uvicorn.run(
        "authbroker.app.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
