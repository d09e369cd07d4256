"""
FastAPI application entry point for the media service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from tibiavote.config import get_settings
from tibiavote.dependencies import close_http_client
from tibiavote.middleware import install_request_guard
from tibiavote.routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_http_client()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="TibiaVote Media API", version="0.1.0", lifespan=lifespan)
    install_request_guard(app, settings.cors_origins, settings.api_prefix)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tibiavote.app:app", host="0.0.0.0", port=8000)
