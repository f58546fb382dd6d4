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
"""Pydantic models for Mission Chat.

This module defines:
- Conversation records (Message) and the chat completions request body
- The flat ChatSettings object consumed by ChatSession
- Mission state records (Objective, GameStats, UsageTotals)
- AIPayload, the untrusted structured data embedded in model answers
- Request/response schemas for the HTTP surface

AIPayload is deliberately lenient: every field is optional and values of the
wrong type are dropped field by field instead of rejecting the whole payload.
"""

import math
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

Role = Literal["system", "user", "assistant"]

OUTCOME_NONE = ""
OUTCOME_VICTORY = "victory"
OUTCOME_DEFEAT = "defeat"

MORALE_RANGE = (0, 100)
INTEL_RANGE = (0, 10)
TURNS_RANGE = (0, 20)


class Message(BaseModel):
    """A single conversation entry sent to the chat completions API."""
    role: Role
    content: str


class ChatSettings(BaseModel):
    """Flat configuration consumed by ChatSession.

    Only presence of api_key is checked (at send time); everything else is
    forwarded to the API as configured.
    """
    api_key: str = ""
    model: str = "Qwen/Qwen3-8B"
    max_tokens: int = 1024
    enable_thinking: bool = False
    thinking_budget: int = 4096
    temperature: float = 0.7
    top_p: float = 0.7
    top_k: int = 50
    min_p: Optional[float] = None
    frequency_penalty: float = 0.5
    stop: Optional[List[str]] = None

    @field_validator('stop', mode='before')
    @classmethod
    def wrap_single_stop(cls, v: Any) -> Any:
        """Accept a single stop string as a one-element list."""
        if isinstance(v, str):
            return [v]
        return v


class ChatCompletionRequest(BaseModel):
    """Request body for POST /v1/chat/completions.

    Optional fields left as None are omitted from the serialized body, so
    enable_thinking/thinking_budget, min_p and stop only appear when set.
    """
    model: str
    messages: List[Message]
    stream: bool = True
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    frequency_penalty: float
    enable_thinking: Optional[bool] = None
    thinking_budget: Optional[int] = None
    min_p: Optional[float] = None
    stop: Optional[List[str]] = None

    @classmethod
    def from_settings(cls, settings: ChatSettings, messages: List[Message]) -> "ChatCompletionRequest":
        """Build a request body from settings and the full history."""
        return cls(
            model=settings.model,
            messages=list(messages),
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            top_p=settings.top_p,
            top_k=settings.top_k,
            frequency_penalty=settings.frequency_penalty,
            enable_thinking=True if settings.enable_thinking else None,
            thinking_budget=settings.thinking_budget if settings.enable_thinking else None,
            min_p=settings.min_p,
            stop=settings.stop
        )

    def to_body(self) -> dict:
        """Serialize to the JSON body, dropping unset optional fields."""
        return self.model_dump(exclude_none=True)


class UsageTotals(BaseModel):
    """Running token usage across completed turns."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Commit one stream's usage snapshot. Negative values are ignored."""
        self.prompt_tokens += max(0, prompt_tokens)
        self.completion_tokens += max(0, completion_tokens)


class Objective(BaseModel):
    """A named mission sub-goal. Only `completed` mutates during a run."""
    id: str
    title: str
    description: str
    completed: bool = False


class GameStats(BaseModel):
    """Live mission statistics. A non-empty outcome is terminal."""
    morale: int = Field(default=60, ge=MORALE_RANGE[0], le=MORALE_RANGE[1])
    intel: int = Field(default=0, ge=INTEL_RANGE[0], le=INTEL_RANGE[1])
    turns_left: int = Field(default=10, ge=TURNS_RANGE[0], le=TURNS_RANGE[1])
    outcome: Literal["", "victory", "defeat"] = OUTCOME_NONE


def _coerce_int(v: Any) -> Optional[int]:
    """Best-effort integer coercion for untrusted numeric fields."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        try:
            v = float(v.strip())
        except ValueError:
            return None
    if isinstance(v, float):
        # NaN and overflowing values (1e999 decodes to inf) are dropped
        if not math.isfinite(v):
            return None
        try:
            return int(v)
        except (OverflowError, ValueError):
            return None
    return None


def _optional_text(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v
    return None


class PayloadEffects(BaseModel):
    """Additive stat changes requested by the model."""
    model_config = ConfigDict(extra="ignore")

    morale: Optional[int] = None
    intel: Optional[int] = None
    turns: Optional[int] = None

    @field_validator('morale', 'intel', 'turns', mode='before')
    @classmethod
    def coerce_delta(cls, v: Any) -> Optional[int]:
        return _coerce_int(v)


class PayloadFlags(BaseModel):
    """Control flags requested by the model."""
    model_config = ConfigDict(extra="ignore")

    end_state: Optional[Literal["victory", "defeat"]] = None
    summary: Optional[str] = None
    hint: Optional[str] = None

    @field_validator('end_state', mode='before')
    @classmethod
    def normalize_end_state(cls, v: Any) -> Optional[str]:
        """Accept victory/defeat case-insensitively; anything else means unset."""
        if isinstance(v, str) and v.strip().lower() in (OUTCOME_VICTORY, OUTCOME_DEFEAT):
            return v.strip().lower()
        return None

    @field_validator('summary', 'hint', mode='before')
    @classmethod
    def text_or_none(cls, v: Any) -> Optional[str]:
        return _optional_text(v)


class AIPayload(BaseModel):
    """Structured data the model embeds in its answer.

    No field is required; absence is valid and produces no effect.
    """
    model_config = ConfigDict(extra="ignore")

    narrative: str = ""
    effects: Optional[PayloadEffects] = None
    objective_progress: List[str] = Field(default_factory=list)
    flags: Optional[PayloadFlags] = None

    @field_validator('narrative', mode='before')
    @classmethod
    def narrative_text(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator('effects', 'flags', mode='before')
    @classmethod
    def mapping_or_none(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else None

    @field_validator('objective_progress', mode='before')
    @classmethod
    def normalize_progress(cls, v: Any) -> List[str]:
        """Accept a single id or a list of ids; drop non-string entries."""
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return []
        return [item.strip() for item in v if isinstance(item, str) and item.strip()]

    @property
    def end_state(self) -> Optional[str]:
        return self.flags.end_state if self.flags else None

    @property
    def summary(self) -> Optional[str]:
        return self.flags.summary if self.flags else None

    @property
    def hint(self) -> Optional[str]:
        return self.flags.hint if self.flags else None

    @classmethod
    def from_raw(cls, raw: Any) -> "AIPayload":
        """Build a payload from an extracted JSON value.

        Non-object input yields an empty payload.
        """
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return cls()


class TurnRequest(BaseModel):
    """Request model for a chat turn."""
    message: str = Field(
        ...,
        min_length=1,
        max_length=8000,
        description="Player's message for this turn",
        examples=["We study the guard rotation from the rooftop."]
    )


class SessionStateResponse(BaseModel):
    """Snapshot of the mission and conversation."""
    stats: GameStats
    objectives: List[Objective]
    summary: Optional[str] = None
    usage: UsageTotals
    history_length: int
    busy: bool


class HealthResponse(BaseModel):
    """Health check response."""
    status: Literal["healthy", "degraded"]
    service: str
    api_key_configured: bool
