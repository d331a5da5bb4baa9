"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.revsignal.api.v1 import health, integrations, scoring

router = APIRouter()

router.include_router(health.router)
router.include_router(integrations.router)
router.include_router(scoring.router)
