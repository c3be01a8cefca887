from __future__ import annotations

from fastapi import HTTPException, Request

from tenantbot.registry import ServiceRegistry


def get_registry(request: Request) -> ServiceRegistry:
    # The registry is attached in create_app or by the lifespan hook.
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="services not initialized")
    return registry
