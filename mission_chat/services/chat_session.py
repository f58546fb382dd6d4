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
"""Streaming chat session against an OpenAI-compatible completions API.

ChatSession owns the conversation history and running usage totals. A turn
moves through IDLE -> CONNECTING -> STREAMING -> IDLE, or through ERROR back
to IDLE when the connection fails. Only one turn may be in flight at a time;
callers should disable input while `is_busy` is true.

Streaming flow:
- Phase 1: POST the full history with stream=true, feed body chunks through
  StreamFrameParser and DeltaAccumulator, forward thinking/answer fragments to
  the callbacks as they arrive
- Phase 2: On [DONE], finish_reason or end of body, append the answer to the
  history, commit the usage snapshot once and return the answer to the caller
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import httpx

from mission_chat.logging import StructuredLogger, redact_secrets, sanitize_for_log, set_session_id
from mission_chat.metrics import get_metrics_collector
from mission_chat.models import ChatCompletionRequest, ChatSettings, Message, UsageTotals
from mission_chat.streaming import AnswerDelta, DeltaAccumulator, ErrorDelta, StreamFrameParser, ThinkingDelta

logger = StructuredLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"


class ChatSessionError(Exception):
    """Base exception for chat session errors."""
    pass


class ConfigError(ChatSessionError):
    """Raised when the session cannot send because settings are incomplete."""
    pass


class TransportError(ChatSessionError):
    """Raised when the connection fails, returns an error status or drops.

    Attributes:
        status_code: HTTP status code if available, None otherwise
    """
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ERROR = "error"


TextCallback = Callable[[str], Awaitable[None]]
UsageCallback = Callable[[UsageTotals], Awaitable[None]]


@dataclass
class SessionCallbacks:
    """Async callbacks a UI registers to follow a turn.

    Callbacks should not raise. If they do, the exception is logged and the
    stream continues.
    """
    on_thinking_delta: Optional[TextCallback] = None
    on_answer_delta: Optional[TextCallback] = None
    on_turn_finalized: Optional[TextCallback] = None
    on_error: Optional[TextCallback] = None
    on_usage_update: Optional[UsageCallback] = None


class ChatSession:
    """Conversation with a streaming chat completions endpoint.

    Example:
        session = ChatSession(settings, http_client, "https://api.example.com",
                              callbacks=SessionCallbacks(on_answer_delta=render))
        session.set_system_prompt(game.render_system_prompt())
        answer = await session.send("We split up at the loading dock.")
    """

    def __init__(
        self,
        settings: ChatSettings,
        http_client: httpx.AsyncClient,
        base_url: str,
        callbacks: Optional[SessionCallbacks] = None,
        timeout: Optional[float] = None
    ):
        """Initialize a chat session.

        Args:
            settings: Flat settings collaborator (model, sampling, api_key)
            http_client: Shared HTTP client used for the streaming POST
            base_url: API base URL; /v1/chat/completions is appended
            callbacks: Optional UI callbacks
            timeout: Optional request timeout in seconds; None waits indefinitely
        """
        self.settings = settings
        self.http_client = http_client
        self.base_url = base_url.rstrip('/')
        self.callbacks = callbacks or SessionCallbacks()
        self.timeout = timeout
        self.session_id = str(uuid.uuid4())

        self._history: List[Message] = []
        self._usage = UsageTotals()
        self._state = SessionState.IDLE
        self._parser = StreamFrameParser()
        self._accumulator = DeltaAccumulator()

        logger.info(
            "Initialized ChatSession",
            url=self.url,
            model=self.settings.model,
            session_id=self.session_id
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}{COMPLETIONS_PATH}"

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    @property
    def usage_totals(self) -> UsageTotals:
        return self._usage.model_copy()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state in (SessionState.CONNECTING, SessionState.STREAMING)

    def set_system_prompt(self, text: str) -> None:
        """Install the system prompt as the sole message at index 0."""
        message = Message(role="system", content=text)
        if self._history and self._history[0].role == "system":
            self._history[0] = message
        else:
            self._history.insert(0, message)

    def update_settings(self, settings: ChatSettings) -> None:
        """Replace settings; takes effect on the next send."""
        self.settings = settings

    def build_request_body(self) -> dict:
        return ChatCompletionRequest.from_settings(self.settings, self._history).to_body()

    def build_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
            "Accept": "text/event-stream",
        }

    async def send(self, text: str) -> Optional[str]:
        """Send a user message and stream the reply.

        Args:
            text: The user's message

        Returns:
            The full answer text, or None when the send was rejected, failed,
            or the model produced no answer text
        """
        set_session_id(self.session_id)

        if not text or not text.strip():
            logger.debug("Ignoring empty message")
            return None

        if self.is_busy:
            logger.warning("Send rejected - a turn is already in flight", state=self._state.value)
            return None

        if not self.settings.api_key or not self.settings.api_key.strip():
            await self._fail(ConfigError("API key is not configured"))
            return None

        self._history.append(Message(role="user", content=text))
        self._state = SessionState.CONNECTING
        start_time = time.time()

        if (collector := get_metrics_collector()):
            collector.record_stream_start()

        logger.info(
            "Sending chat turn",
            model=self.settings.model,
            history_length=len(self._history),
            enable_thinking=self.settings.enable_thinking,
            message_preview=sanitize_for_log(text, 50)
        )

        try:
            await self._stream()
        except TransportError as e:
            await self._fail(e)
            return None
        except asyncio.CancelledError:
            logger.info("Chat turn cancelled", state=self._state.value)
            self._clear_transient()
            self._state = SessionState.IDLE
            raise

        return await self._finalize(start_time)

    async def _stream(self) -> None:
        """Open the streaming POST and run the read loop.

        Raises:
            TransportError: On connect failure, error status or dropped connection
        """
        body = self.build_request_body()

        try:
            async with self.http_client.stream(
                "POST",
                self.url,
                json=body,
                headers=self.build_headers(),
                timeout=self.timeout
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"API returned HTTP {response.status_code}: "
                        f"{sanitize_for_log(redact_secrets(detail), 200)}",
                        status_code=response.status_code
                    )

                self._state = SessionState.STREAMING
                logger.debug("Stream connected", status_code=response.status_code)

                async for chunk in response.aiter_bytes():
                    await self._handle_chunk(chunk)
                    if self._parser.done or self._accumulator.finished:
                        break
                    await asyncio.sleep(0)

        except httpx.HTTPError as e:
            detail = str(e) or type(e).__name__
            raise TransportError(
                f"Connection error ({type(e).__name__}): {redact_secrets(detail)}"
            ) from e

    async def _handle_chunk(self, chunk: bytes) -> None:
        for frame in self._parser.feed(chunk):
            for delta in self._accumulator.process(frame):
                if isinstance(delta, ThinkingDelta):
                    await self._emit("on_thinking_delta", delta.text)
                elif isinstance(delta, AnswerDelta):
                    await self._emit("on_answer_delta", delta.text)

    async def _finalize(self, start_time: float) -> Optional[str]:
        """Commit the completed turn and return to IDLE."""
        answer = self._accumulator.answer
        thinking_length = len(self._accumulator.thinking)
        usage = self._accumulator.pending_usage
        dropped_frames = self._parser.dropped_frames

        self._clear_transient()
        self._state = SessionState.IDLE

        if answer:
            self._history.append(Message(role="assistant", content=answer))
        else:
            logger.warning("Stream completed with empty answer", thinking_length=thinking_length)

        if usage is not None:
            self._usage.add(usage.prompt_tokens, usage.completion_tokens)

        duration_ms = (time.time() - start_time) * 1000
        if (collector := get_metrics_collector()):
            collector.record_stream_complete(duration_ms)
            collector.record_dropped_frames(dropped_frames)
            if usage is not None:
                collector.record_usage(usage.prompt_tokens, usage.completion_tokens)

        logger.info(
            "Chat turn completed",
            answer_length=len(answer),
            thinking_length=thinking_length,
            dropped_frames=dropped_frames,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            duration_ms=f"{duration_ms:.2f}"
        )

        if usage is not None:
            await self._emit("on_usage_update", self.usage_totals)
        if answer:
            await self._emit("on_turn_finalized", answer)
            return answer
        return None

    async def _fail(self, error: ChatSessionError) -> None:
        """Surface an error once and return to IDLE.

        Usage captured before the failure is discarded; an unconfirmed turn is
        never counted.
        """
        self._state = SessionState.ERROR
        delta = ErrorDelta(str(error))
        message = delta.message

        logger.error(
            "Chat turn failed",
            error_type=type(error).__name__,
            error=redact_secrets(message),
            status_code=getattr(error, "status_code", None)
        )
        if (collector := get_metrics_collector()):
            if isinstance(error, TransportError):
                collector.record_stream_error()
            collector.record_error(f"chat_{type(error).__name__.lower()}")

        self._clear_transient()
        self._state = SessionState.IDLE
        await self._emit("on_error", message)

    def _clear_transient(self) -> None:
        self._parser.reset()
        self._accumulator.reset()

    def reset(self) -> None:
        """Drop history, usage totals and per-turn state for a fresh run."""
        self._history.clear()
        self._usage = UsageTotals()
        self._clear_transient()
        self._state = SessionState.IDLE
        self.session_id = str(uuid.uuid4())
        logger.info("Chat session reset", session_id=self.session_id)

    async def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as e:
            logger.warning(
                "Session callback raised exception",
                callback=name,
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )
