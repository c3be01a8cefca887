from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from tenantbot.apps.ops.routes.health import router as health_router
from tenantbot.apps.ops.routes.ops import router as ops_router
from tenantbot.core.logging import configure_logging
from tenantbot.registry import ServiceRegistry, build_registry


def create_app(registry: ServiceRegistry | None = None) -> FastAPI:
    """Operational HTTP surface.

    With an explicit registry (worker process, tests) the caller owns its
    lifecycle. Without one, the app builds and closes its own registry.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if registry is not None:
            yield
            return
        configure_logging()
        owned = await build_registry()
        app.state.registry = owned
        try:
            yield
        finally:
            await owned.aclose()

    app = FastAPI(title="tenantbot ops", lifespan=lifespan)
    if registry is not None:
        app.state.registry = registry
    app.include_router(health_router)
    app.include_router(ops_router)
    return app
