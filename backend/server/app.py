"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (session coordinator)
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adapters.base import ConnectFn
from config import AppConfig
from observability import logger
from observability.logger import log_event
from session.coordinator import SessionCoordinator

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    *,
    connect_fn: ConnectFn | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations (and a fake upstream connect_fn)
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.configure(debug=config.debug_asr)

    coordinator = SessionCoordinator(config=config, connect_fn=connect_fn)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "SERVER_STARTED",
            "env": config.env,
            "asr_model": config.asr_default_model,
            "recordings_dir": config.recordings_dir,
            "api_key_configured": bool(config.dashscope_api_key),
        })
        yield
        await coordinator.shutdown()

    app = FastAPI(title="Realtime Speech Gateway", lifespan=lifespan)

    app.state.config = config
    app.state.coordinator = coordinator

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
