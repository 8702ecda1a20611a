"""
Per-server invocation metrics.

Aggregates are updated incrementally from each InvocationRecord. A bounded
trailing window of recent records backs the health monitor's windowed error
rate and latency checks. Catalog misses never reach the tracker.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

from mcp_orchestrator.models.mcp import InvocationRecord, MetricsAggregate, WindowStats, utcnow


class MetricsTracker:

    def __init__(self, window_size: int = 500):
        self.window_size = window_size
        self._aggregates: Dict[str, MetricsAggregate] = {}
        self._windows: Dict[str, Deque[InvocationRecord]] = {}

    def record(self, record: InvocationRecord) -> Optional[MetricsAggregate]:
        if record.server_id is None:
            return None

        current = self._aggregates.get(record.server_id) or MetricsAggregate(server_id=record.server_id)
        total = current.total_requests + 1
        latency = record.latency_ms
        updated = MetricsAggregate(
            server_id=record.server_id,
            total_requests=total,
            successes=current.successes + (1 if record.success else 0),
            failures=current.failures + (0 if record.success else 1),
            average_latency_ms=current.average_latency_ms + (latency - current.average_latency_ms) / total,
            min_latency_ms=latency if current.min_latency_ms is None else min(current.min_latency_ms, latency),
            max_latency_ms=latency if current.max_latency_ms is None else max(current.max_latency_ms, latency),
            last_request_at=record.timestamp,
        )
        self._aggregates[record.server_id] = updated

        window = self._windows.get(record.server_id)
        if window is None:
            window = self._windows[record.server_id] = deque(maxlen=self.window_size)
        window.append(record)
        return updated

    def aggregate(self, server_id: str) -> MetricsAggregate:
        return self._aggregates.get(server_id) or MetricsAggregate(server_id=server_id)

    def aggregates(self) -> List[MetricsAggregate]:
        return list(self._aggregates.values())

    def window_stats(self, server_id: str, window_seconds: float,
                     now: Optional[datetime] = None) -> WindowStats:
        """Error count and mean latency over records newer than ``now - window_seconds``."""
        cutoff = (now or utcnow()) - timedelta(seconds=window_seconds)
        records = [r for r in self._windows.get(server_id, ()) if r.timestamp >= cutoff]
        if not records:
            return WindowStats(server_id=server_id)
        return WindowStats(
            server_id=server_id,
            total=len(records),
            failures=sum(1 for r in records if not r.success),
            average_latency_ms=sum(r.latency_ms for r in records) / len(records),
        )

    def reset(self, server_id: Optional[str] = None) -> None:
        if server_id is None:
            self._aggregates.clear()
            self._windows.clear()
        else:
            self._aggregates.pop(server_id, None)
            self._windows.pop(server_id, None)
