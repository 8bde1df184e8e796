from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Any


class Telemetry:
    """In-process counters and gauges, owned by the composition root.

    Components receive an instance at construction time; the ops app reads
    ``snapshot()`` for the metrics endpoint.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._started_at = time.time()

    def increment_counter(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def counter(self, name: str) -> int:
        with self._lock:
            return int(self._counters.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_s": round(time.time() - self._started_at, 3),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
