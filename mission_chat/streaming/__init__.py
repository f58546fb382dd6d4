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
"""Streaming primitives: upstream SSE parsing and downstream SSE relay."""

from mission_chat.streaming.accumulator import (
    AnswerDelta,
    DeltaAccumulator,
    DoneDelta,
    ErrorDelta,
    StreamDelta,
    ThinkingDelta,
    UsageDelta,
)
from mission_chat.streaming.sse_parser import StreamFrameParser
from mission_chat.streaming.transport import SSETransport, StreamEvent, TransportClosedError

__all__ = [
    "AnswerDelta",
    "DeltaAccumulator",
    "DoneDelta",
    "ErrorDelta",
    "SSETransport",
    "StreamDelta",
    "StreamEvent",
    "StreamFrameParser",
    "ThinkingDelta",
    "TransportClosedError",
    "UsageDelta",
]
