# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""FastAPI application entry point for the mission chat service.

This module creates and configures the FastAPI application with:
- Route registration
- CORS middleware (for the browser client)
- Lifespan management for the HTTP client and the mission orchestrator
- OpenAPI/Swagger documentation
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import AsyncClient

from mission_chat.api.routes import get_orchestrator, router
from mission_chat.config import get_settings
from mission_chat.logging import configure_logging
from mission_chat.metrics import disable_metrics_collector, init_metrics_collector
from mission_chat.middleware import RequestCorrelationMiddleware
from mission_chat.services.chat_session import ChatSession
from mission_chat.services.game_state import GameStateMachine
from mission_chat.services.mission_orchestrator import MissionOrchestrator

# Will be configured in lifespan
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    - Startup: load settings, configure logging and metrics, create the HTTP
      client and the mission orchestrator
    - Shutdown: close the HTTP client

    Args:
        app: FastAPI application instance
    """
    try:
        settings = get_settings()

        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"LLM API base URL: {settings.llm_api_base_url}")
        logger.info(f"LLM model: {settings.llm_model} (thinking={settings.llm_enable_thinking})")
        logger.info(f"Metrics enabled: {settings.enable_metrics}")
        if not settings.llm_api_key:
            logger.warning("LLM_API_KEY is not set; turns will fail until it is configured")

        if settings.enable_metrics:
            init_metrics_collector()
            logger.info("Metrics collector initialized")
        else:
            disable_metrics_collector()
            logger.info("Metrics collection disabled")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    app.state.http_client = AsyncClient()
    logger.info("HTTP client initialized")

    session = ChatSession(
        settings=settings.chat_settings(),
        http_client=app.state.http_client,
        base_url=settings.llm_api_base_url,
        timeout=settings.llm_request_timeout
    )
    app.state.orchestrator = MissionOrchestrator(session=session, game=GameStateMachine())
    logger.info("Mission orchestrator initialized")

    yield

    logger.info("Shutting down mission chat service...")
    await app.state.http_client.aclose()
    logger.info("HTTP client closed")


app = FastAPI(
    title="Mission Chat API",
    description=(
        "Turn-based covert-mission game narrated by a streaming chat model. "
        "Relays thinking and answer tokens as Server-Sent Events and applies "
        "the model's JSON payload to the mission state."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestCorrelationMiddleware)

app.include_router(router, tags=["mission"])


def get_orchestrator_override() -> MissionOrchestrator:
    """Dependency override that provides the MissionOrchestrator from app state.

    Raises:
        RuntimeError: If the orchestrator is not initialized in app state
    """
    if not hasattr(app.state, 'orchestrator'):
        raise RuntimeError(
            "Mission orchestrator not initialized. "
            "Ensure the application lifespan has started."
        )
    return app.state.orchestrator


app.dependency_overrides[get_orchestrator] = get_orchestrator_override


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mission_chat.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.log_level.lower()
    )
