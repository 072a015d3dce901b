"""In-memory counters and percentile histograms."""
from __future__ import annotations

import math
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional


class MetricsRecorder:
    """Counters plus ring-buffered duration samples with p50/p95/p99."""

    def __init__(self, window: int = 1000) -> None:
        self.window = window
        self.counters: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self.histograms: Dict[str, Dict[str, Deque[float]]] = defaultdict(dict)
        self._lock = threading.Lock()

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        labels_key = self._labels_key(labels)
        with self._lock:
            self.counters[name][labels_key] += value

    def observe(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        labels_key = self._labels_key(labels)
        with self._lock:
            bucket = self.histograms[name].setdefault(labels_key, deque(maxlen=self.window))
            bucket.append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        labels_key = self._labels_key(labels)
        return self.counters[name].get(labels_key, 0.0)

    def total(self, name: str) -> float:
        return sum(self.counters[name].values())

    def samples(self, name: str, labels: Optional[Dict[str, str]] = None) -> List[float]:
        return list(self.histograms[name].get(self._labels_key(labels), ()))

    def percentile(
        self, name: str, q: float, labels: Optional[Dict[str, str]] = None
    ) -> Optional[float]:
        """Nearest-rank percentile over the retained samples."""
        values = sorted(self.samples(name, labels))
        if not values:
            return None
        rank = max(1, math.ceil(q / 100.0 * len(values)))
        return values[min(rank, len(values)) - 1]

    def summary(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Optional[float]]:
        values = self.samples(name, labels)
        return {
            "count": len(values),
            "p50": self.percentile(name, 50, labels),
            "p95": self.percentile(name, 95, labels),
            "p99": self.percentile(name, 99, labels),
        }

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            counters = {name: dict(values) for name, values in self.counters.items()}
            histogram_keys = {name: list(buckets) for name, buckets in self.histograms.items()}
        durations = {}
        for name, keys in histogram_keys.items():
            durations[name] = {
                key: self.summary(name, self._parse_key(key)) for key in keys
            }
        return {"counters": counters, "durations": durations}

    def _labels_key(self, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return "__no_labels__"
        sorted_items = sorted(labels.items())
        return "|".join(f"{k}={v}" for k, v in sorted_items)

    @staticmethod
    def _parse_key(key: str) -> Optional[Dict[str, str]]:
        if key == "__no_labels__":
            return None
        return dict(item.split("=", 1) for item in key.split("|"))
