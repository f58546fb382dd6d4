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
"""Configuration module for the Mission Chat service.

This module loads and validates configuration from environment variables.
Service-level settings are validated at startup to fail fast; the LLM API
key is only presence-checked when a chat turn is sent, so the service can
start (and report itself degraded) without one.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mission_chat.models import ChatSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    """

    # Chat completions API
    llm_api_base_url: str = Field(
        default="https://api.siliconflow.cn",
        description="Base URL of the OpenAI-compatible chat completions API",
        examples=["https://api.siliconflow.cn", "http://localhost:8000"]
    )
    llm_api_key: str = Field(
        default="",
        description="Bearer token for the chat completions API"
    )
    llm_model: str = Field(
        default="Qwen/Qwen3-8B",
        description="Model identifier sent with every request"
    )
    llm_max_tokens: int = Field(
        default=1024,
        ge=1,
        description="Maximum completion tokens per turn"
    )
    llm_enable_thinking: bool = Field(
        default=False,
        description="Ask the model to emit reasoning_content deltas"
    )
    llm_thinking_budget: int = Field(
        default=4096,
        ge=1,
        description="Token budget for reasoning when thinking is enabled"
    )
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_top_p: float = Field(default=0.7, ge=0.0, le=1.0)
    llm_top_k: int = Field(default=50, ge=0)
    llm_min_p: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Optional min_p sampling parameter (omitted when unset)"
    )
    llm_frequency_penalty: float = Field(default=0.5, ge=-2.0, le=2.0)
    llm_stop: Optional[List[str]] = Field(
        default=None,
        description="Optional stop sequences as a JSON list (omitted when unset)"
    )
    llm_request_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Optional HTTP timeout in seconds; unset means wait indefinitely"
    )

    # Service Configuration
    service_name: str = Field(
        default="mission-chat",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    @field_validator('llm_api_base_url')
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Validate API base URL format."""
        if not v:
            raise ValueError("llm_api_base_url cannot be empty")
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError(
                f"llm_api_base_url must start with http:// or https://, got: {v}"
            )
        return v.rstrip('/')

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    def chat_settings(self) -> ChatSettings:
        """Build the flat settings object consumed by ChatSession."""
        return ChatSettings(
            api_key=self.llm_api_key,
            model=self.llm_model,
            max_tokens=self.llm_max_tokens,
            enable_thinking=self.llm_enable_thinking,
            thinking_budget=self.llm_thinking_budget,
            temperature=self.llm_temperature,
            top_p=self.llm_top_p,
            top_k=self.llm_top_k,
            min_p=self.llm_min_p,
            frequency_penalty=self.llm_frequency_penalty,
            stop=self.llm_stop
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    The cache can be cleared for testing using get_settings.cache_clear().

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Check the LLM_* and LOG_* environment variables."
        ) from e
