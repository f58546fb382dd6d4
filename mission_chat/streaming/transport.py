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
"""Server-Sent Events transport for relaying turn events to the browser.

The orchestrator emits StreamEvents (thinking, answer, usage, stats,
objectives, hint, game_over, error, complete); SSETransport frames them as
`data: {json}\\n\\n` and hands the text to a sink, normally an asyncio.Queue
drained by the StreamingResponse generator.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from mission_chat.logging import StructuredLogger

logger = StructuredLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"


@dataclass
class StreamEvent:
    """Represents a streaming event sent to the client.

    Attributes:
        type: Event type (thinking, answer, usage, stats, objectives, hint,
              game_over, error, complete)
        data: Event payload
        timestamp: Event timestamp (ISO 8601 format)
    """
    type: str
    data: Dict[str, Any]
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_sse(self) -> str:
        """Format as a single SSE data frame."""
        payload = {"type": self.type, "timestamp": self.timestamp}
        payload.update(self.data)
        return f"data: {json.dumps(payload)}\n\n"


class SSETransport:
    """Server-Sent Events transport writing frames to an async sink.

    Features:
    - HTTP-based (works through proxies)
    - Server -> client only
    - Terminates with the conventional `data: [DONE]` marker
    """

    def __init__(self, sink: Callable[[str], Awaitable[None]]):
        """Initialize SSE transport.

        Args:
            sink: Async callable receiving formatted SSE text
        """
        self._sink = sink
        self._connected = True

    async def send_event(self, event: StreamEvent) -> None:
        """Send event in SSE format.

        Raises:
            TransportClosedError: If the transport is closed or the sink fails
        """
        if not self._connected:
            raise TransportClosedError("Transport not connected")

        try:
            await self._sink(event.to_sse())
        except Exception as e:
            self._connected = False
            logger.warning(
                "Failed to send SSE event - client may have disconnected",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise TransportClosedError(f"Failed to send SSE event: {e}") from e

    async def close(self) -> None:
        """Send the [DONE] marker and close the stream."""
        if self._connected:
            try:
                await self._sink(SSE_DONE)
            except Exception as e:
                logger.warning("Failed to send SSE done marker", error=str(e))
            finally:
                self._connected = False

    def is_connected(self) -> bool:
        return self._connected


class TransportClosedError(Exception):
    """Raised when writing to a closed or failed client transport."""
    pass
