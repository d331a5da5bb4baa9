"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
a lifespan hook that wires the sync and scoring pipeline onto app.state,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from datetime import timedelta
from functools import partial

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.revsignal.config import get_settings
from src.revsignal.core.database import close_db, get_session, init_db
from src.revsignal.core.encryption import TokenCipher
from src.revsignal.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.revsignal.core.redis import close_redis, get_redis_pool
from src.revsignal.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.revsignal.api.v1.router import router as v1_router
from src.revsignal.deals.repository import DealRepository
from src.revsignal.integrations.connectors import build_connector
from src.revsignal.integrations.oauth import OAuthClient, OAuthService, OAuthStateStore
from src.revsignal.integrations.reconciliation import ReconciliationEngine
from src.revsignal.integrations.repository import IntegrationRepository, OwnerDirectory
from src.revsignal.integrations.service import IntegrationService
from src.revsignal.integrations.vault import CredentialVault
from src.revsignal.scoring.model import DealHealthModel
from src.revsignal.scoring.orchestrator import ScoringOrchestrator
from src.revsignal.services.llm import get_llm_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the pipeline on startup, close pools on shutdown.

    A missing or malformed CREDENTIAL_ENCRYPTION_KEY aborts startup.
    """
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    cipher = TokenCipher(settings.CREDENTIAL_ENCRYPTION_KEY)

    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Integrations ─────────────────────────────────────────────────────
    integration_repository = IntegrationRepository(session_factory=get_session)
    owner_directory = OwnerDirectory(session_factory=get_session)
    deal_repository = DealRepository(session_factory=get_session)

    oauth_client = OAuthClient(settings)
    state_store = OAuthStateStore(get_redis_pool(), ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS)
    vault = CredentialVault(cipher, integration_repository, oauth_client)

    engine = ReconciliationEngine(
        integrations=integration_repository,
        owners=owner_directory,
        deals=deal_repository,
        connector_factory=partial(build_connector, vault=vault, settings=settings),
        stale_sync_after=timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES),
    )

    app.state.integration_service = IntegrationService(integration_repository, engine)
    app.state.oauth_service = OAuthService(
        settings, integration_repository, cipher, state_store, oauth_client
    )
    log.info("startup.integrations_initialized")

    # ── Scoring ──────────────────────────────────────────────────────────
    llm_service = get_llm_service()
    app.state.llm_service = llm_service
    app.state.scoring_orchestrator = ScoringOrchestrator(
        deals=deal_repository,
        model=DealHealthModel(llm_service),
        model_version=settings.SCORING_MODEL_VERSION,
        stale_after=timedelta(hours=settings.SCORING_STALE_HOURS),
        batch_limit=settings.SCORING_BATCH_LIMIT,
        throttle_after=settings.SCORING_THROTTLE_AFTER,
        throttle_delay=settings.SCORING_THROTTLE_DELAY_SECONDS,
    )
    log.info("startup.scoring_initialized", model_version=settings.SCORING_MODEL_VERSION)

    yield

    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="RevSignal Pipeline",
        description="CRM sync and AI deal health scoring",
        version="0.1.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        return get_metrics_response()

    app.include_router(v1_router, prefix="/api/v1")

    return app


# Module-level app for uvicorn
app = create_app()
