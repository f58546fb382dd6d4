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
"""Shared test fixtures for the Mission Chat service.

This module provides:
- test_env: Test environment variables
- sse_body / sse_frame: Helpers that build upstream SSE response bodies
- upstream: A scripted fake of the chat completions API (httpx MockTransport)
- chat_settings: ChatSettings with a test API key
- client: FastAPI TestClient whose orchestrator talks to the fake upstream

Usage:
    def test_turn(client, upstream):
        upstream.reply_with(sse_body(answer_frames("Hello")))
        response = client.post("/turn", json={"message": "Go"})
"""

import asyncio
import json
import os
from typing import Any, Iterable, List, Optional
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from mission_chat.metrics import disable_metrics_collector
from mission_chat.models import ChatSettings

TEST_BASE_URL = "http://upstream.test"
TEST_API_KEY = "sk-test-key-1234567890abcdef"


def sse_frame(payload: Any) -> str:
    """Format one upstream SSE data frame."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


def content_chunk(content: Optional[str] = None, reasoning: Optional[str] = None,
                  finish_reason: Optional[str] = None, usage: Optional[dict] = None) -> dict:
    """Build a chat completion chunk as the API streams it."""
    delta = {}
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if content is not None:
        delta["content"] = content
    chunk = {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def sse_body(chunks: Iterable[Any], done: bool = True) -> str:
    """Join chunks into a full SSE body, optionally terminated by [DONE]."""
    body = "".join(sse_frame(c) for c in chunks)
    if done:
        body += sse_frame("[DONE]")
    return body


def payload_answer(narrative: str = "The team moves in.", **payload) -> str:
    """A model answer ending with a fenced JSON payload."""
    payload.setdefault("narrative", narrative)
    return f"{narrative}\n\n```json\n{json.dumps(payload)}\n```"


class FakeUpstream:
    """Scripted stand-in for the chat completions API.

    Each queued reply is either a body string (served with status 200) or a
    (status_code, body) tuple. Requests are recorded for assertions.
    """

    def __init__(self):
        self.replies: List[Any] = []
        self.requests: List[httpx.Request] = []

    def reply_with(self, body: str, status_code: int = 200) -> None:
        self.replies.append((status_code, body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            return httpx.Response(500, text="no scripted reply")
        status_code, body = self.replies.pop(0)
        return httpx.Response(
            status_code,
            content=body.encode("utf-8"),
            headers={"Content-Type": "text/event-stream"}
        )

    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def test_env():
    """Fixture providing test environment variables."""
    return {
        "LLM_API_BASE_URL": TEST_BASE_URL,
        "LLM_API_KEY": TEST_API_KEY,
        "LLM_MODEL": "Qwen/Qwen3-8B",
        "SERVICE_NAME": "mission-chat-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "false"
    }


@pytest.fixture
def chat_settings():
    return ChatSettings(api_key=TEST_API_KEY)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def mock_http_client(upstream):
    """httpx.AsyncClient routed to the fake upstream."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    yield client
    asyncio.run(client.aclose())


@pytest.fixture(autouse=True)
def reset_metrics():
    disable_metrics_collector()
    yield
    disable_metrics_collector()


def _build_client(env: dict, upstream: FakeUpstream):
    with patch.dict(os.environ, env, clear=True):
        from mission_chat.config import get_settings
        get_settings.cache_clear()

        from mission_chat.api.routes import get_orchestrator
        from mission_chat.main import app
        from mission_chat.services.chat_session import ChatSession
        from mission_chat.services.mission_orchestrator import MissionOrchestrator

        test_http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
        original_override = app.dependency_overrides.get(get_orchestrator)

        try:
            settings = get_settings()
            session = ChatSession(
                settings=settings.chat_settings(),
                http_client=test_http_client,
                base_url=settings.llm_api_base_url
            )
            orchestrator = MissionOrchestrator(session=session)
            app.dependency_overrides[get_orchestrator] = lambda: orchestrator

            with TestClient(app) as client:
                client.orchestrator = orchestrator
                yield client
        finally:
            asyncio.run(test_http_client.aclose())
            if original_override is not None:
                app.dependency_overrides[get_orchestrator] = original_override
            get_settings.cache_clear()


@pytest.fixture
def client(test_env, upstream):
    """Fixture providing a FastAPI TestClient backed by the fake upstream.

    The orchestrator used by the routes is exposed as `client.orchestrator`.
    """
    yield from _build_client(test_env, upstream)


@pytest.fixture
def client_without_key(test_env, upstream):
    env = dict(test_env)
    env["LLM_API_KEY"] = ""
    yield from _build_client(env, upstream)


@pytest.fixture
def client_with_metrics(test_env, upstream):
    env = dict(test_env)
    env["ENABLE_METRICS"] = "true"
    yield from _build_client(env, upstream)
