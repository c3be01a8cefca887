from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from tenantbot.apps.ops.deps import get_registry
from tenantbot.registry import ServiceRegistry
from tenantbot.services.health.system import UNHEALTHY

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(registry: ServiceRegistry = Depends(get_registry)) -> Any:
    # Unhealthy maps to 503 so load balancers stop routing; degraded still serves.
    result = await registry.system_health.check()
    status_code = 503 if result.status == UNHEALTHY else 200
    return JSONResponse(result.to_dict(), status_code=status_code)
