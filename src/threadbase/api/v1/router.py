"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.threadbase.api.v1 import health, integrations, knowledge, tenants

router = APIRouter()

router.include_router(health.router)
router.include_router(tenants.router)
router.include_router(knowledge.router)
router.include_router(integrations.router)
