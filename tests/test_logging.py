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
"""Tests for structured logging helpers."""

import json
import logging

import pytest

from mission_chat.logging import (
    JsonFormatter,
    PhaseTimer,
    StructuredLogger,
    clear_context,
    get_request_id,
    get_session_id,
    redact_secrets,
    sanitize_for_log,
    set_request_id,
    set_session_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_context()
    yield
    clear_context()


def test_redact_sk_style_keys():
    text = "calling with sk-abcdefghijklmnop1234"
    assert "abcdefghijklmnop1234" not in redact_secrets(text)
    assert "sk-***REDACTED***" in redact_secrets(text)


def test_redact_bearer_tokens():
    redacted = redact_secrets("Authorization: Bearer abc.def-ghi")
    assert "abc.def-ghi" not in redacted
    assert "Bearer ***REDACTED***" in redacted


def test_redact_api_key_assignment():
    redacted = redact_secrets('api_key="0123456789abcdefXYZ"')
    assert "0123456789abcdefXYZ" not in redacted


def test_redact_leaves_plain_text():
    assert redact_secrets("The team waits at the dock.") == "The team waits at the dock."


def test_sanitize_strips_control_characters_and_truncates():
    assert sanitize_for_log("line1\nline2\r\x00") == "line1line2"
    assert sanitize_for_log("x" * 20, max_length=5) == "xxxxx..."


def test_context_ids_round_trip():
    set_request_id("req-1")
    set_session_id("sess-1")
    assert get_request_id() == "req-1"
    assert get_session_id() == "sess-1"

    clear_context()
    assert get_request_id() is None
    assert get_session_id() is None


def test_structured_logger_appends_key_values(caplog):
    logger = StructuredLogger("mission_chat.test")
    set_request_id("req-42")

    with caplog.at_level(logging.INFO, logger="mission_chat.test"):
        logger.info("Turn advanced", turns_left=4, skipped=None)

    record = caplog.records[-1]
    assert "Turn advanced | request_id=req-42 turns_left=4" in record.getMessage()
    assert "skipped" not in record.getMessage()
    assert record.turns_left == 4


def test_json_formatter_includes_extras():
    record = logging.LogRecord("mission_chat", logging.INFO, __file__, 1, "hello", None, None)
    record.session_id = "sess-9"
    record.morale = 55

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "hello"
    assert data["level"] == "INFO"
    assert data["session_id"] == "sess-9"
    assert data["morale"] == 55


def test_phase_timer_logs_completion(caplog):
    logger = StructuredLogger("mission_chat.timer")
    with caplog.at_level(logging.INFO, logger="mission_chat.timer"):
        with PhaseTimer("payload_apply", logger):
            pass
    assert "Phase completed: payload_apply" in caplog.text


def test_phase_timer_logs_failure(caplog):
    logger = StructuredLogger("mission_chat.timer")
    with caplog.at_level(logging.INFO, logger="mission_chat.timer"):
        with pytest.raises(ValueError):
            with PhaseTimer("chat_stream", logger):
                raise ValueError("boom")
    assert "Phase failed: chat_stream" in caplog.text
    assert "error_type=ValueError" in caplog.text
