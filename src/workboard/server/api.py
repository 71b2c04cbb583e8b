"""FastAPI application for the Workboard task service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from ..errors import WorkboardError
from ..events.ws import WebSocketHub, hub as default_hub
from ..services import Services, build_services
from .auth import build_policy
from .milestone_api import create_milestone_router, create_phase_router
from .notification_api import create_notification_router
from .project_api import create_project_router
from .task_api import create_task_router


def create_app(
    data_dir: Optional[Path] = None,
    enable_cors: bool = True,
    services: Optional[Services] = None,
    hub: Optional[WebSocketHub] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        data_dir: Directory holding the ``.workboard`` state folder.
        enable_cors: Whether to enable CORS.
        services: Prebuilt service bundle, mainly for tests.
        hub: WebSocket hub receiving live events.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Workboard",
        description="Task hierarchy, dependency and notification service",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    hub = hub or default_hub
    if services is None:
        services = build_services(Path(data_dir or Path.cwd()), hub=hub)
    app.state.services = services
    app.state.policy = build_policy(services.settings)

    def _get_services() -> Services:
        return app.state.services

    @app.exception_handler(WorkboardError)
    async def workboard_error_handler(request: Request, exc: WorkboardError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
        else:
            logger.debug("{} {} -> {} {}", request.method, request.url.path, exc.status_code, exc.kind)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Workboard",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/api/auth/status")
    async def auth_status():
        settings = app.state.services.settings
        return {"enabled": settings.auth_enabled, "policy": settings.policy}

    app.include_router(create_project_router(_get_services))
    app.include_router(create_task_router(_get_services))
    app.include_router(create_milestone_router(_get_services))
    app.include_router(create_phase_router(_get_services))
    app.include_router(create_notification_router(_get_services, hub))

    return app
