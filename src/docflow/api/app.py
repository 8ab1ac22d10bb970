"""FastAPI app factory for the docflow API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from docflow.api.analysis import router as analysis_router
from docflow.api.dependencies import ServiceRegistry, build_registry
from docflow.api.diagnostics import router as diagnostics_router
from docflow.api.documents import router as documents_router
from docflow.api.realtime import router as realtime_router
from docflow.api.scraping import router as scraping_router
from docflow.api.tasks import router as tasks_router
from docflow.api.transcription import router as transcription_router
from docflow.api.vision import router as vision_router
from docflow.services.notifications import get_hub
from docflow.settings import get_settings

LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, get_settings().runtime.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def create_app(registry: ServiceRegistry | None = None, *, start_background: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        registry: Pre-built services; built from settings on startup when omitted.
        start_background: Start queue pollers and recovery as configured in settings.

    Returns:
        Configured FastAPI instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        services: ServiceRegistry = getattr(app.state, "services", None) or build_registry(get_hub())
        app.state.services = services
        services.hub.bind_loop(asyncio.get_running_loop())
        if start_background:
            services.start_background(
                queue_bridge=settings.realtime.enable_queue_bridge,
                recovery=settings.recovery.enabled,
            )
        LOGGER.info("docflow API started")
        try:
            yield
        finally:
            services.close()
            services.hub.bind_loop(None)
            LOGGER.info("docflow API stopped")

    app = FastAPI(title="docflow API", version="0.1", lifespan=lifespan)
    if registry is not None:
        app.state.services = registry
    app.include_router(documents_router)
    app.include_router(analysis_router)
    app.include_router(vision_router)
    app.include_router(transcription_router)
    app.include_router(scraping_router)
    app.include_router(tasks_router)
    app.include_router(realtime_router)
    app.include_router(diagnostics_router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    return app


def serve() -> None:
    """Run the API with uvicorn on the host and port of ``api.base_url``."""

    import uvicorn

    target = urlparse(get_settings().api.base_url)
    uvicorn.run("docflow.api.app:app", host=target.hostname or "127.0.0.1", port=target.port or 8000)


_configure_logging()

# For uvicorn, expose `app` at module level
app = create_app()

__all__ = ["app", "create_app", "serve"]
