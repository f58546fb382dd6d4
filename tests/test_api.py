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
"""API tests for the Mission Chat service.

These tests drive the FastAPI app through TestClient with the upstream chat
completions API replaced by a scripted httpx MockTransport.
"""

import json
from unittest.mock import PropertyMock, patch

from mission_chat.services.mission_orchestrator import MissionOrchestrator

from conftest import content_chunk, payload_answer, sse_body


def parse_sse(text):
    """Split an SSE response body into decoded events plus the [DONE] flag."""
    events = []
    done = False
    for line in text.splitlines():
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):]
        if data == "[DONE]":
            done = True
            continue
        events.append(json.loads(data))
    return events, done


def test_health_healthy_with_api_key(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "mission-chat-test",
        "api_key_configured": True
    }


def test_health_degraded_without_api_key(client_without_key):
    data = client_without_key.get("/health").json()
    assert data["status"] == "degraded"
    assert data["api_key_configured"] is False


def test_request_id_header_echoed(client):
    response = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert response.headers["X-Request-Id"] == "req-123"

    generated = client.get("/health").headers["X-Request-Id"]
    assert generated and generated != "req-123"


def test_initial_state(client):
    data = client.get("/state").json()
    assert data["stats"] == {"morale": 60, "intel": 0, "turns_left": 10, "outcome": ""}
    assert [o["id"] for o in data["objectives"]] == ["briefing", "access_plan", "extraction"]
    assert data["usage"] == {"prompt_tokens": 0, "completion_tokens": 0}
    assert data["history_length"] == 0
    assert data["busy"] is False


def test_turn_streams_events_and_updates_state(client, upstream):
    answer = payload_answer(
        "The guard waves you through.",
        effects={"morale": 10, "intel": 1},
        objective_progress=["briefing"]
    )
    upstream.reply_with(sse_body([
        content_chunk(reasoning="Bluff is plausible."),
        content_chunk(content=answer, finish_reason="stop",
                      usage={"prompt_tokens": 50, "completion_tokens": 20}),
    ]))

    response = client.post("/turn", json={"message": "Bluff past the guard"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events, done = parse_sse(response.text)
    assert done
    types = [e["type"] for e in events]
    assert types[0] == "thinking"
    assert events[1]["type"] == "answer"
    assert events[1]["text"] == answer
    assert "usage" in types and "stats" in types and "objectives" in types
    assert types[-1] == "complete"
    assert events[-1]["payload_found"] is True

    state = client.get("/state").json()
    assert state["stats"]["morale"] == 70
    assert state["stats"]["intel"] == 1
    assert state["stats"]["turns_left"] == 9
    assert state["usage"] == {"prompt_tokens": 50, "completion_tokens": 20}
    # system + user + assistant
    assert state["history_length"] == 3


def test_turn_upstream_failure_streams_error(client, upstream):
    upstream.reply_with("bad gateway", status_code=502)

    response = client.post("/turn", json={"message": "Go"})

    assert response.status_code == 200
    events, done = parse_sse(response.text)
    assert done
    assert [e["type"] for e in events] == ["error"]
    assert "502" in events[0]["message"]
    assert client.get("/state").json()["stats"]["turns_left"] == 10


def test_turn_without_api_key_streams_config_error(client_without_key, upstream):
    response = client_without_key.post("/turn", json={"message": "Go"})

    events, done = parse_sse(response.text)
    assert done
    assert events[0]["type"] == "error"
    assert "API key" in events[0]["message"]
    assert upstream.requests == []


def test_turn_rejects_empty_message(client):
    assert client.post("/turn", json={"message": ""}).status_code == 422


def test_turn_conflict_when_mission_over(client, upstream):
    client.orchestrator.game.apply_payload({"flags": {"end_state": "defeat"}})

    response = client.post("/turn", json={"message": "Try again"})

    assert response.status_code == 409
    assert upstream.requests == []


def test_turn_conflict_while_busy(client, upstream):
    with patch.object(MissionOrchestrator, "is_busy", new_callable=PropertyMock, return_value=True):
        response = client.post("/turn", json={"message": "Hurry"})
    assert response.status_code == 409
    assert upstream.requests == []


def test_turn_conflict_while_claimed(client, upstream):
    claim = client.orchestrator.claim_turn()

    response = client.post("/turn", json={"message": "Me first"})
    assert response.status_code == 409
    assert upstream.requests == []

    client.orchestrator.release_turn(claim)
    upstream.reply_with(sse_body([content_chunk(content="Now you.")]))
    response = client.post("/turn", json={"message": "Me first"})
    assert response.status_code == 200
    assert not client.orchestrator.is_busy


def test_reset_starts_fresh_run(client, upstream):
    upstream.reply_with(sse_body([content_chunk(
        content=payload_answer(flags={"end_state": "victory"}),
        usage={"prompt_tokens": 1, "completion_tokens": 1}
    )]))
    client.post("/turn", json={"message": "Finish it"})
    assert client.get("/state").json()["stats"]["outcome"] == "victory"

    response = client.post("/reset")

    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["outcome"] == ""
    assert data["summary"] is None
    assert data["history_length"] == 0
    assert data["usage"]["prompt_tokens"] == 0


def test_metrics_disabled_returns_404(client):
    assert client.get("/metrics").status_code == 404


def test_metrics_enabled(client_with_metrics, upstream):
    upstream.reply_with(sse_body([content_chunk(content="no payload here")]))
    client_with_metrics.post("/turn", json={"message": "Go"})

    data = client_with_metrics.get("/metrics").json()
    assert data["requests"]["total"] >= 1
    assert data["streaming"]["total_streams"] == 1
    assert data["streaming"]["payload_failures"] == 1
