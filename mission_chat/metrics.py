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
"""Optional metrics collection for observability.

This module provides simple in-memory metrics collection:
- Request counters by status code
- Error counters by type
- Latency tracking (min, max, avg, count by operation)
- Chat stream counters, dropped SSE frames and token usage
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional


@dataclass
class LatencyStats:
    """Statistics for a numeric sample series (latency, counts, etc.)."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = 0.0

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count > 0 else 0.0

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self, unit: str = "ms") -> Dict[str, float]:
        """Convert to dictionary, suffixing keys with the unit (e.g. avg_ms)."""
        suffix = f"_{unit}" if unit else ""
        return {
            "count": self.count,
            f"avg{suffix}": round(self.avg, 2),
            f"min{suffix}": round(self.min, 2) if self.min != float('inf') else 0.0,
            f"max{suffix}": round(self.max, 2)
        }


class MetricsCollector:
    """In-memory metrics collector with thread-safe operations."""

    def __init__(self):
        self._lock = Lock()
        self._request_counts: Dict[int, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._start_time = time.time()
        self._stream_counts = self._empty_stream_counts()
        self._stream_duration_stats = LatencyStats()
        self._usage = {"prompt_tokens": 0, "completion_tokens": 0}

    @staticmethod
    def _empty_stream_counts() -> Dict[str, int]:
        return {
            "total": 0,
            "completed": 0,
            "errors": 0,
            "dropped_frames": 0,
            "payload_failures": 0
        }

    def record_request(self, status_code: int) -> None:
        with self._lock:
            self._request_counts[status_code] += 1

    def record_error(self, error_type: str) -> None:
        with self._lock:
            self._error_counts[error_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._latencies[operation].record(duration_ms)

    def record_stream_start(self) -> None:
        with self._lock:
            self._stream_counts["total"] += 1

    def record_stream_complete(self, duration_ms: float) -> None:
        with self._lock:
            self._stream_counts["completed"] += 1
            self._stream_duration_stats.record(duration_ms)

    def record_stream_error(self) -> None:
        with self._lock:
            self._stream_counts["errors"] += 1

    def record_dropped_frames(self, count: int) -> None:
        """Record SSE frames dropped because their JSON could not be decoded."""
        if count <= 0:
            return
        with self._lock:
            self._stream_counts["dropped_frames"] += count

    def record_payload_failure(self) -> None:
        """Record a model answer with no extractable JSON payload."""
        with self._lock:
            self._stream_counts["payload_failures"] += 1

    def record_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        with self._lock:
            self._usage["prompt_tokens"] += prompt_tokens
            self._usage["completion_tokens"] += completion_tokens

    def get_metrics(self) -> Dict:
        """Get all collected metrics."""
        with self._lock:
            total_requests = sum(self._request_counts.values())
            success_requests = sum(
                count for status, count in self._request_counts.items()
                if 200 <= status < 400
            )

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "requests": {
                    "total": total_requests,
                    "success": success_requests,
                    "errors": total_requests - success_requests,
                    "by_status_code": dict(self._request_counts)
                },
                "errors": {
                    "by_type": dict(self._error_counts)
                },
                "latencies": {
                    operation: stats.to_dict(unit="ms")
                    for operation, stats in self._latencies.items()
                },
                "streaming": {
                    "total_streams": self._stream_counts["total"],
                    "completed_streams": self._stream_counts["completed"],
                    "stream_errors": self._stream_counts["errors"],
                    "dropped_frames": self._stream_counts["dropped_frames"],
                    "payload_failures": self._stream_counts["payload_failures"],
                    "stream_duration": self._stream_duration_stats.to_dict(unit="ms") if self._stream_duration_stats.count > 0 else {}
                },
                "usage": dict(self._usage)
            }

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        with self._lock:
            self._request_counts.clear()
            self._error_counts.clear()
            self._latencies.clear()
            self._stream_counts = self._empty_stream_counts()
            self._stream_duration_stats = LatencyStats()
            self._usage = {"prompt_tokens": 0, "completion_tokens": 0}
            self._start_time = time.time()


# Global metrics collector instance (singleton)
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector instance, or None when disabled."""
    return _metrics_collector


def init_metrics_collector() -> MetricsCollector:
    """Initialize the global metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def disable_metrics_collector() -> None:
    """Disable metrics collection by clearing the global instance."""
    global _metrics_collector
    _metrics_collector = None


class MetricsTimer:
    """Context manager for timing operations and recording metrics.

    Usage:
        with MetricsTimer("turn"):
            # do work
            pass
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.start_time = 0.0
        self.collector = get_metrics_collector()

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.collector:
            duration_ms = (time.time() - self.start_time) * 1000
            self.collector.record_latency(self.operation, duration_ms)
