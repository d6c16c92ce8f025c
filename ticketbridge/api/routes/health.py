"""Health check endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter

from ticketbridge.api.dependencies import RegistryDep
from ticketbridge.core.config import settings
from ticketbridge.core.exceptions import StorageError

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
@router.get("/")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.app_env,
    }


@router.get("/ready")
async def readiness_check(registry: RegistryDep) -> dict[str, Any]:
    """Readiness check - verifies storage and summarizes tenant sessions."""
    try:
        storage_ok = await registry.store.health_check()
    except StorageError:
        storage_ok = False

    sessions: dict[str, int] = {}
    for tenant in registry.tenants():
        state = registry.get(tenant.tenant_id).state.value
        sessions[state] = sessions.get(state, 0) + 1

    return {
        "status": "ready" if storage_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {"storage": storage_ok},
        "sessions": sessions,
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    """Liveness check - basic endpoint for kubernetes probes."""
    return {"status": "alive"}
