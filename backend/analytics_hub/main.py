from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .container import Container, build_container
from .routes_admin import router as admin_router
from .routes_analytics import router as analytics_router
from .routes_auth import router as auth_router
from .routes_integrations import router as integrations_router
from .services.scheduler import SchedulerService
from .settings import Settings, get_settings

logger = logging.getLogger("analytics_hub")


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    """Build the app; the container is created at startup unless one is given."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        owned = container is None
        app.state.container = container or build_container(settings)
        scheduler = SchedulerService(app.state.container)
        scheduler.start()
        logger.info("Scheduler started on app startup")
        try:
            yield
        finally:
            scheduler.stop()
            if owned:
                await app.state.container.aclose()
            logger.info("Shutdown complete")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url)
        return PlainTextResponse("Internal Server Error", status_code=500)

    @app.get("/ping")
    async def ping():
        return {"status": "ok"}

    app.include_router(auth_router)
    app.include_router(analytics_router)
    app.include_router(integrations_router)
    app.include_router(admin_router)
    return app


app = create_app()
