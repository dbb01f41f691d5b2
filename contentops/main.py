"""FastAPI entry-point exposing the agent container."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from contentops.api.commands import router as commands_router
from contentops.api.routes import router as agents_router
from contentops.orchestration.container import AgentContainer
from contentops.runtime import get_container


def create_app(container: Optional[AgentContainer] = None) -> FastAPI:
    """Build the app; ``container`` replaces the environment-configured one."""

    def active() -> AgentContainer:
        return container if container is not None else get_container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the container with the app and stop it on shutdown."""
        await active().start()
        yield
        await active().stop()

    app = FastAPI(title="Content Operations Agents", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(commands_router)
    if container is not None:
        app.dependency_overrides[get_container] = lambda: container

    @app.get("/health")
    async def health() -> JSONResponse:
        report = active().health()
        return JSONResponse(report.to_dict(), status_code=200 if report.ok else 503)

    return app


app = create_app()


def serve() -> None:
    uvicorn.run("contentops.main:app", host="127.0.0.1", port=8000)
