"""
Exchange Adapter - Metrics.

============================================================
PURPOSE
============================================================
Per-adapter request metrics.

METRICS TRACKED:
- Request latency (by endpoint)
- Request success/failure counts
- Rate limit, timeout and connection errors
- Records fetched (fills, funding, positions)

============================================================
"""

import logging
from datetime import datetime
from typing import Dict, Any, List
from dataclasses import dataclass
from collections import defaultdict
from enum import Enum


logger = logging.getLogger(__name__)


# ============================================================
# METRIC TYPES
# ============================================================

class MetricType(Enum):
    """Types of metrics."""

    REQUEST_SUCCESS = "request_success"
    REQUEST_FAILURE = "request_failure"
    RATE_LIMIT_HIT = "rate_limit_hit"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    FILLS_FETCHED = "fills_fetched"
    FUNDING_RECORDS_FETCHED = "funding_records_fetched"
    POSITIONS_FETCHED = "positions_fetched"


@dataclass
class LatencyStats:
    """Latency statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        """Average latency in ms."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement."""
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms if self.min_ms != float("inf") else 0,
            "max_ms": self.max_ms,
        }


# ============================================================
# ADAPTER METRICS
# ============================================================

class AdapterMetrics:
    """
    Metrics collector for one exchange adapter instance.
    """

    def __init__(self, exchange_id: str, max_recent: int = 100):
        """
        Initialize metrics.

        Args:
            exchange_id: Exchange identifier
            max_recent: Number of recent requests kept for debugging
        """
        self._exchange_id = exchange_id
        self._start_time = datetime.utcnow()

        self._latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._counters: Dict[MetricType, int] = {mt: 0 for mt in MetricType}
        self._error_codes: Dict[str, int] = defaultdict(int)

        self._recent_requests: List[Dict[str, Any]] = []
        self._max_recent = max_recent

    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------

    def record_request(
        self,
        endpoint: str,
        latency_ms: float,
        success: bool,
        status_code: int = None,
        error_code: str = None,
    ) -> None:
        """
        Record a request.

        Args:
            endpoint: API endpoint
            latency_ms: Request latency in ms
            success: Whether request succeeded
            status_code: HTTP status code
            error_code: Error code if failed
        """
        self._latency[endpoint].record(latency_ms)
        self._latency["_all"].record(latency_ms)

        if success:
            self._counters[MetricType.REQUEST_SUCCESS] += 1
        else:
            self._counters[MetricType.REQUEST_FAILURE] += 1

            if error_code:
                self._error_codes[error_code] += 1

                upper = error_code.upper()
                if "RATE" in upper:
                    self._counters[MetricType.RATE_LIMIT_HIT] += 1
                elif "TIMEOUT" in upper:
                    self._counters[MetricType.TIMEOUT] += 1
                elif "NETWORK" in upper:
                    self._counters[MetricType.CONNECTION_ERROR] += 1

        self._recent_requests.append({
            "timestamp": datetime.utcnow().isoformat(),
            "endpoint": endpoint,
            "latency_ms": latency_ms,
            "success": success,
            "status_code": status_code,
            "error_code": error_code,
        })

        if len(self._recent_requests) > self._max_recent:
            self._recent_requests.pop(0)

    def record_records(self, metric: MetricType, count: int) -> None:
        """Record number of records fetched."""
        self._counters[metric] += count

    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------

    def get_summary(self) -> Dict[str, Any]:
        """
        Get metrics summary.

        Returns:
            Dict with all metrics
        """
        uptime = (datetime.utcnow() - self._start_time).total_seconds()

        success = self._counters[MetricType.REQUEST_SUCCESS]
        failure = self._counters[MetricType.REQUEST_FAILURE]
        total_requests = success + failure
        success_rate = success / total_requests if total_requests > 0 else 1.0

        return {
            "exchange_id": self._exchange_id,
            "uptime_seconds": uptime,
            "requests": {
                "total": total_requests,
                "success": success,
                "failure": failure,
                "success_rate": success_rate,
            },
            "latency": self._latency.get("_all", LatencyStats()).to_dict(),
            "records": {
                "fills": self._counters[MetricType.FILLS_FETCHED],
                "funding": self._counters[MetricType.FUNDING_RECORDS_FETCHED],
                "positions": self._counters[MetricType.POSITIONS_FETCHED],
            },
            "errors": {
                "rate_limit_hits": self._counters[MetricType.RATE_LIMIT_HIT],
                "timeouts": self._counters[MetricType.TIMEOUT],
                "connection_errors": self._counters[MetricType.CONNECTION_ERROR],
                "by_code": dict(self._error_codes),
            },
        }

    def get_latency_by_endpoint(self) -> Dict[str, Dict[str, float]]:
        """Get latency stats by endpoint."""
        return {
            endpoint: stats.to_dict()
            for endpoint, stats in self._latency.items()
            if endpoint != "_all"
        }

    def get_recent_requests(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent requests."""
        return self._recent_requests[-limit:]

    def reset(self) -> None:
        """Reset all metrics."""
        self._start_time = datetime.utcnow()
        self._latency.clear()
        self._counters = {mt: 0 for mt in MetricType}
        self._error_codes.clear()
        self._recent_requests.clear()
