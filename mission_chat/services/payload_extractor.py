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
"""Extraction of the JSON payload embedded in a model answer.

The model is asked to end its answer with a ```json fenced block. This module
finds that block (or falls back to the whole answer) and decodes it. There is
no schema validation here: the decoded object is returned unchanged and the
game state machine decides what to apply.
"""

import json
from typing import Optional

from mission_chat.logging import StructuredLogger, redact_secrets
from mission_chat.metrics import get_metrics_collector

logger = StructuredLogger(__name__)

FENCE_OPEN = "```json"
FENCE_CLOSE = "```"

# Maximum payload size to log (to prevent log flooding)
MAX_PAYLOAD_LOG_LENGTH = 300


class PayloadExtractor:
    """Pulls a fenced or bare JSON object out of free-text model answers.

    Returns None ("no payload") when nothing decodes to a JSON object. An
    empty object {} is a valid, empty payload.
    """

    @staticmethod
    def locate_source(text: str) -> str:
        """Return the text that should hold the JSON payload.

        Everything between the first ```json marker and the next ``` (or the
        end of the text when unterminated); without a marker, the whole
        trimmed text.
        """
        start = text.find(FENCE_OPEN)
        if start == -1:
            return text.strip()

        body_start = start + len(FENCE_OPEN)
        end = text.find(FENCE_CLOSE, body_start)
        if end == -1:
            return text[body_start:].strip()
        return text[body_start:end].strip()

    def extract(self, text: Optional[str]) -> Optional[dict]:
        """Decode the payload embedded in an answer.

        Args:
            text: Raw answer text

        Returns:
            The decoded JSON object, or None when there is no usable payload
        """
        if not text or not text.strip():
            logger.warning("No payload - answer text is empty", error_type="empty_answer")
            self._record_failure()
            return None

        source = self.locate_source(text)
        fenced = FENCE_OPEN in text

        try:
            value = json.loads(source)
        except json.JSONDecodeError as e:
            logger.warning(
                "No payload - answer JSON could not be decoded",
                error_type="json_decode_error",
                error_details=f"line {e.lineno}, column {e.colno}: {e.msg}",
                fenced=fenced,
                payload_preview=self._truncate_for_log(source)
            )
            self._record_failure()
            return None

        if not isinstance(value, dict):
            logger.warning(
                "No payload - answer JSON is not an object",
                error_type="not_an_object",
                value_type=type(value).__name__,
                fenced=fenced
            )
            self._record_failure()
            return None

        logger.debug("Extracted answer payload", fenced=fenced, keys=sorted(value.keys()))
        return value

    @staticmethod
    def _truncate_for_log(text: str) -> str:
        redacted = redact_secrets(text)
        if len(redacted) > MAX_PAYLOAD_LOG_LENGTH:
            return redacted[:MAX_PAYLOAD_LOG_LENGTH] + "... (truncated)"
        return redacted

    @staticmethod
    def _record_failure() -> None:
        if (collector := get_metrics_collector()):
            collector.record_payload_failure()
