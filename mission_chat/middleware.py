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
"""Request correlation middleware.

Assigns each HTTP request an id (taken from X-Request-Id when the client
sends one), exposes it to log records through context variables, echoes it
back in the response and records request counts when metrics are enabled.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mission_chat.logging import StructuredLogger, clear_context, set_request_id
from mission_chat.metrics import MetricsTimer, get_metrics_collector

logger = StructuredLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


class RequestCorrelationMiddleware(BaseHTTPMiddleware):
    """Tags requests with a correlation id and logs their latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_request_id(request_id)

        start_time = time.time()
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            client_ip=request.client.host if request.client else None
        )

        try:
            operation_name = "turn_request" if request.url.path == "/turn" else "request"
            with MetricsTimer(operation_name):
                response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            if (collector := get_metrics_collector()):
                collector.record_request(response.status_code)

            logger.info(
                f"Request completed: {request.method} {request.url.path} - {response.status_code}",
                duration_ms=f"{duration_ms:.2f}"
            )

            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {request.method} {request.url.path} - {type(e).__name__}",
                error=str(e),
                duration_ms=f"{duration_ms:.2f}"
            )
            raise

        finally:
            clear_context()
