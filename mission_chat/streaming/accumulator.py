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
"""Interpretation of decoded chat completion chunks into stream deltas.

Each decoded SSE frame is shaped like:
    {"choices": [{"delta": {"reasoning_content": "...", "content": "..."},
                  "finish_reason": null}],
     "usage": {"prompt_tokens": 12, "completion_tokens": 40}}

The accumulator turns frames into typed deltas, keeps the full thinking and
answer text for the turn and holds the latest usage report until the caller
commits it.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Union

from mission_chat.logging import StructuredLogger

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class ThinkingDelta:
    """Fragment of the model's reasoning channel."""
    text: str


@dataclass(frozen=True)
class AnswerDelta:
    """Fragment of the model's final answer."""
    text: str


@dataclass(frozen=True)
class UsageDelta:
    """Token usage snapshot reported by the API."""
    prompt_tokens: int
    completion_tokens: int


@dataclass(frozen=True)
class DoneDelta:
    """The stream signalled completion (finish_reason or [DONE])."""
    reason: Optional[str] = None


@dataclass(frozen=True)
class ErrorDelta:
    """The stream failed; message is user-presentable."""
    message: str


StreamDelta = Union[ThinkingDelta, AnswerDelta, UsageDelta, DoneDelta, ErrorDelta]


def _token_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


class DeltaAccumulator:
    """Accumulates thinking/answer text and pending usage for one turn."""

    def __init__(self):
        self._thinking: List[str] = []
        self._answer: List[str] = []
        self.pending_usage: Optional[UsageDelta] = None
        self.finished = False
        self.finish_reason: Optional[str] = None

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def answer(self) -> str:
        return "".join(self._answer)

    def process(self, frame: Any) -> List[StreamDelta]:
        """Interpret one decoded frame.

        Args:
            frame: A decoded JSON value from StreamFrameParser

        Returns:
            Deltas produced by this frame, in order: thinking, answer, usage, done.
        """
        if not isinstance(frame, dict):
            return []

        deltas: List[StreamDelta] = []
        choices = frame.get("choices")

        if isinstance(choices, list) and choices:
            choice = choices[0] if isinstance(choices[0], dict) else {}
            delta = choice.get("delta")
            if isinstance(delta, dict):
                reasoning = delta.get("reasoning_content")
                if reasoning is not None:
                    text = str(reasoning)
                    self._thinking.append(text)
                    deltas.append(ThinkingDelta(text))

                content = delta.get("content")
                if content is not None:
                    text = str(content)
                    self._answer.append(text)
                    deltas.append(AnswerDelta(text))
        else:
            choice = None

        usage = frame.get("usage")
        if isinstance(usage, dict):
            # Overwrite: providers may repeat cumulative usage on several chunks
            self.pending_usage = UsageDelta(
                prompt_tokens=_token_count(usage.get("prompt_tokens")),
                completion_tokens=_token_count(usage.get("completion_tokens"))
            )
            deltas.append(self.pending_usage)

        if choice is not None and choice.get("finish_reason") is not None:
            self.finished = True
            self.finish_reason = str(choice["finish_reason"])
            logger.debug("Stream finish_reason received", finish_reason=self.finish_reason)
            deltas.append(DoneDelta(self.finish_reason))

        return deltas

    def reset(self) -> None:
        """Clear per-turn state."""
        self._thinking.clear()
        self._answer.clear()
        self.pending_usage = None
        self.finished = False
        self.finish_reason = None
