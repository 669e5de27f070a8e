from fastapi import FastAPI

from backend.apps.ops.api import router as ops_router
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    app = FastAPI(title="Ledger Recovery Engine")

    # Routers
    app.include_router(health_router)
    app.include_router(ops_router)

    return app


# ASGI app instance
app = create_app()
