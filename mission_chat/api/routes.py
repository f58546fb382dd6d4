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
"""API routes for the mission chat service.

Endpoints:
- POST /turn: stream one mission turn as Server-Sent Events
- GET /state: current stats, objectives, usage and busy flag
- POST /reset: start a fresh run
- GET /health: service health (degraded without an API key)
- GET /metrics: in-memory metrics when ENABLE_METRICS is true

POST /turn event contract (each frame is `data: {json}\\n\\n`):
- thinking / answer: {"text": fragment}
- usage: {"prompt_tokens", "completion_tokens", "total_tokens"}
- stats: GameStats fields
- objectives: {"objectives": [...]}
- hint: {"text": hint}
- game_over: {"result", "summary"}
- error: {"message"}
- complete: {"answer", "payload_found", "stats", "outcome"}
The stream always ends with `data: [DONE]`.
"""

import asyncio
from typing import Set

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from mission_chat.config import Settings, get_settings
from mission_chat.logging import StructuredLogger, sanitize_for_log
from mission_chat.metrics import get_metrics_collector
from mission_chat.models import HealthResponse, SessionStateResponse, TurnRequest
from mission_chat.services.mission_orchestrator import (
    MissionOrchestrator,
    MissionOverError,
    TurnInFlightError,
)
from mission_chat.streaming import SSETransport, StreamEvent, TransportClosedError

logger = StructuredLogger(__name__)

router = APIRouter()

# Strong references to running turn tasks
_turn_tasks: Set[asyncio.Task] = set()


def get_orchestrator() -> MissionOrchestrator:
    """Dependency that provides the MissionOrchestrator.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_orchestrator dependency must be overridden. "
        "This should be configured in mission_chat.main module."
    )


@router.post(
    "/turn",
    status_code=status.HTTP_200_OK,
    summary="Play one mission turn (streaming)",
    responses={
        200: {"description": "text/event-stream of turn events"},
        409: {"description": "A turn is already in flight or the mission is over"},
    }
)
async def play_turn(
    request: TurnRequest,
    orchestrator: MissionOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """Stream the model's reply and the resulting game events.

    Raises:
        HTTPException: 409 when the orchestrator cannot accept a turn
    """
    try:
        claim = orchestrator.claim_turn()
    except MissionOverError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Mission is over ({orchestrator.game.outcome}). POST /reset to play again."
        )
    except TurnInFlightError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A turn is already in flight"
        )

    logger.info("Processing turn request", message_preview=sanitize_for_log(request.message, 50))

    event_queue: asyncio.Queue = asyncio.Queue()
    transport = SSETransport(event_queue.put)

    async def run_and_stream():
        try:
            await orchestrator.run_turn(request.message, transport.send_event, claim=claim)
        except Exception as e:
            logger.error(
                "Unexpected error processing turn",
                error_type=type(e).__name__,
                error=str(e)
            )
            if (collector := get_metrics_collector()):
                collector.record_error("internal_error")
            await _send_error(transport, "An unexpected error occurred while processing your turn")
        finally:
            await transport.close()
            await event_queue.put(None)

    # The task holds the claim and runs whether or not the body is read
    task = asyncio.create_task(run_and_stream())
    _turn_tasks.add(task)
    task.add_done_callback(_turn_tasks.discard)
    task.add_done_callback(lambda _: orchestrator.release_turn(claim))

    async def event_stream():
        """Async generator that yields SSE-formatted events."""
        try:
            while True:
                frame = await event_queue.get()
                if frame is None:
                    break
                yield frame.encode("utf-8")
        except asyncio.CancelledError:
            logger.info("Client disconnected during turn stream")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


async def _send_error(transport: SSETransport, message: str) -> None:
    try:
        await transport.send_event(StreamEvent(type="error", data={"message": message}))
    except TransportClosedError:
        logger.debug("Client gone before error event could be sent")


@router.get(
    "/state",
    response_model=SessionStateResponse,
    summary="Current mission state"
)
async def get_state(
    orchestrator: MissionOrchestrator = Depends(get_orchestrator)
) -> SessionStateResponse:
    return orchestrator.get_state()


@router.post(
    "/reset",
    response_model=SessionStateResponse,
    summary="Start a new mission run",
    responses={409: {"description": "A turn is in flight"}}
)
async def reset_mission(
    orchestrator: MissionOrchestrator = Depends(get_orchestrator)
) -> SessionStateResponse:
    """Clear conversation history, usage totals and game state."""
    try:
        orchestrator.reset()
    except TurnInFlightError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return orchestrator.get_state()


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description=(
        "Returns status='healthy' when an API key is configured, 'degraded' "
        "otherwise. The upstream API is never contacted."
    )
)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    api_key_configured = bool(settings.llm_api_key.strip())
    if not api_key_configured:
        logger.debug("Health check: no API key configured")
    return HealthResponse(
        status="healthy" if api_key_configured else "degraded",
        service=settings.service_name,
        api_key_configured=api_key_configured
    )


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Request counts, error counts, latencies, stream and token usage "
        "totals. Returns 404 unless ENABLE_METRICS is true."
    ),
    responses={404: {"description": "Metrics disabled"}}
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()
