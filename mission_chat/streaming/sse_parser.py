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
"""Incremental parser for Server-Sent Events from the chat completions API.

The upstream body arrives as arbitrary byte chunks. This parser keeps a text
buffer, emits every complete newline-terminated line as a candidate frame and
retains the trailing partial line for the next chunk.

SSE Format:
    data: {"choices":[{"delta":{"content":"Hel"}}]}\\n\\n
    : keep-alive\\n
    data: [DONE]\\n\\n

Only `data: ` lines are frames. Malformed JSON payloads are dropped without
surfacing an error so a transient bad frame never aborts an answer.
"""

import codecs
import json
from typing import Any, List, Union

from mission_chat.logging import StructuredLogger, sanitize_for_log

logger = StructuredLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class StreamFrameParser:
    """Splits a growing SSE byte stream into decoded `data:` payloads.

    Example:
        parser = StreamFrameParser()
        async for chunk in response.aiter_bytes():
            for frame in parser.feed(chunk):
                handle(frame)
            if parser.done:
                break
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.frame_count = 0
        self.dropped_frames = 0

    def feed(self, chunk: Union[bytes, str]) -> List[Any]:
        """Consume one chunk and return the decoded data frames it completes.

        Args:
            chunk: Raw body bytes (or already-decoded text)

        Returns:
            Decoded JSON values in arrival order. Empty once `[DONE]` was seen.
        """
        if self.done:
            return []

        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk

        lines = (self._buffer + text).split("\n")
        self._buffer = lines.pop()

        frames: List[Any] = []
        for line in lines:
            payload = self._data_payload(line)
            if payload is None:
                continue

            if payload == DONE_MARKER:
                self.done = True
                self._buffer = ""
                logger.debug("SSE stream signalled [DONE]", frames=self.frame_count)
                break

            try:
                frames.append(json.loads(payload))
            except json.JSONDecodeError as e:
                self.dropped_frames += 1
                logger.debug(
                    "Dropping malformed SSE frame",
                    error=e.msg,
                    payload_preview=sanitize_for_log(payload, 80)
                )
                continue

            self.frame_count += 1

        return frames

    @staticmethod
    def _data_payload(line: str):
        """Return the trimmed payload of a data line, or None for other lines."""
        stripped = line.strip()
        if not stripped.startswith(DATA_PREFIX):
            return None
        return stripped[len(DATA_PREFIX):].strip()

    def reset(self) -> None:
        """Discard buffered text and counters so the parser can be reused."""
        self._decoder.reset()
        self._buffer = ""
        self.done = False
        self.frame_count = 0
        self.dropped_frames = 0
