"""
Metrics collection for Overwatch.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Any, Dict, Optional

from .logging import get_logger

logger = get_logger("overwatch.utils.metrics")


class MetricsCollector:
    """Thread-safe in-memory counters, gauges and timers."""

    def __init__(self, timer_window: int = 500):
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=timer_window))
        self._started = time.monotonic()

    def increment(self, name: str, value: float = 1, tags: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._counters[self._make_key(name, tags)] += value

    def gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._gauges[self._make_key(name, tags)] = value

    def remove_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._gauges.pop(self._make_key(name, tags), None)

    def timer(self, name: str, duration: float, tags: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._timers[self._make_key(name, tags)].append(duration)

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(self._make_key(name, tags), 0)

    def get_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(self._make_key(name, tags))

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            timers = {}
            for key, values in self._timers.items():
                if values:
                    ordered = sorted(values)
                    timers[key] = {
                        "count": len(ordered),
                        "avg": sum(ordered) / len(ordered),
                        "max": ordered[-1],
                        "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
                    }
            return {
                "uptime_seconds": time.monotonic() - self._started,
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timers": timers,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()
        logger.debug("metrics_reset")

    def _make_key(self, name: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return name
        tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{tag_str}]"


__all__ = [
    'MetricsCollector',
]
