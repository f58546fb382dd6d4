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
"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from mission_chat.config import Settings, get_settings


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_config_defaults():
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.llm_api_base_url == "https://api.siliconflow.cn"
    assert settings.llm_api_key == ""
    assert settings.llm_model == "Qwen/Qwen3-8B"
    assert settings.llm_max_tokens == 1024
    assert settings.llm_enable_thinking is False
    assert settings.llm_thinking_budget == 4096
    assert settings.llm_min_p is None
    assert settings.llm_stop is None
    assert settings.llm_request_timeout is None
    assert settings.service_name == "mission-chat"
    assert settings.log_level == "INFO"
    assert settings.enable_metrics is False


def test_config_from_environment():
    env = {
        "LLM_API_BASE_URL": "http://localhost:9000/",
        "LLM_API_KEY": "sk-env-key",
        "LLM_ENABLE_THINKING": "true",
        "LLM_TEMPERATURE": "0.2",
        "LLM_STOP": '["END", "###"]',
        "LLM_REQUEST_TIMEOUT": "30",
        "LOG_LEVEL": "debug",
    }
    with patch.dict(os.environ, env, clear=True):
        settings = get_settings()

    assert settings.llm_api_base_url == "http://localhost:9000"
    assert settings.llm_api_key == "sk-env-key"
    assert settings.llm_enable_thinking is True
    assert settings.llm_temperature == 0.2
    assert settings.llm_stop == ["END", "###"]
    assert settings.llm_request_timeout == 30.0
    assert settings.log_level == "DEBUG"


def test_get_settings_is_cached():
    with patch.dict(os.environ, {}, clear=True):
        assert get_settings() is get_settings()


@pytest.mark.parametrize("env", [
    {"LLM_API_BASE_URL": "ftp://example.com"},
    {"LOG_LEVEL": "LOUD"},
    {"LLM_TEMPERATURE": "5"},
    {"LLM_REQUEST_TIMEOUT": "0"},
])
def test_invalid_configuration_rejected(env):
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ValueError, match="Configuration error"):
            get_settings()


def test_chat_settings_projection():
    settings = Settings(
        _env_file=None,
        llm_api_key="sk-x",
        llm_model="test-model",
        llm_enable_thinking=True,
        llm_thinking_budget=256,
        llm_min_p=0.1,
        llm_stop=["STOP"]
    )

    chat = settings.chat_settings()

    assert chat.api_key == "sk-x"
    assert chat.model == "test-model"
    assert chat.enable_thinking is True
    assert chat.thinking_budget == 256
    assert chat.min_p == 0.1
    assert chat.stop == ["STOP"]
    assert chat.top_k == settings.llm_top_k
