from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Mapping


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._latency_sum_ms: dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def observe_ms(self, name: str, took_ms: int, labels: Mapping[str, str] | None = None) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._latency_sum_ms[f"{key}_sum"] += max(0, int(took_ms))
            self._latency_sum_ms[f"{key}_count"] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            merged: dict[str, int] = dict(self._counters)
            merged.update(self._latency_sum_ms)
            return merged

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._latency_sum_ms.clear()

    @staticmethod
    def _format_key(name: str, labels: Mapping[str, str] | None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
