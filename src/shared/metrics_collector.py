"""
In-process metrics collection.

Counters and histograms for webhook deliveries and rate limit decisions.
Values live in process memory and are exposed through ``get_all_metrics``.
"""

import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

Number = Union[int, float]


def _label_key(labels: Dict[str, Any]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Counter:
    """Counter metric that only increases."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._value: Number = 0
        self._by_labels: Dict[Tuple[Tuple[str, str], ...], Number] = defaultdict(int)
        self._lock = threading.Lock()

    def increment(self, amount: Number = 1, **labels):
        """Increment the counter."""
        with self._lock:
            self._value += amount
            if labels:
                self._by_labels[_label_key(labels)] += amount

    def get_value(self, **labels) -> Number:
        """Get current value, optionally for one label set."""
        with self._lock:
            if labels:
                return self._by_labels.get(_label_key(labels), 0)
            return self._value

    def reset(self):
        """Reset counter to zero."""
        with self._lock:
            self._value = 0
            self._by_labels.clear()


class Histogram:
    """Histogram over the most recent observations."""

    def __init__(self, name: str, description: str = "", max_samples: int = 1000):
        self.name = name
        self.description = description
        self._samples: deque = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    def observe(self, value: Number):
        with self._lock:
            self._samples.append(value)

    def summary(self) -> Dict[str, Number]:
        """Count, mean, min, max and p95 of the retained samples."""
        with self._lock:
            samples = sorted(self._samples)
        if not samples:
            return {'count': 0}
        return {
            'count': len(samples),
            'mean': sum(samples) / len(samples),
            'min': samples[0],
            'max': samples[-1],
            'p95': samples[int(len(samples) * 0.95)],
        }

    def reset(self):
        with self._lock:
            self._samples.clear()


class MetricsCollector:
    """Registry of named metrics."""

    _instance: Optional['MetricsCollector'] = None

    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.started_at = datetime.utcnow()
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, description)
            return self.counters[name]

    def get_histogram(self, name: str, description: str = "") -> Histogram:
        """Get or create a histogram."""
        with self._lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, description)
            return self.histograms[name]

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'counters': {name: c.get_value() for name, c in self.counters.items()},
            'histograms': {name: h.summary() for name, h in self.histograms.items()},
        }

    def reset(self):
        """Reset every registered metric."""
        for counter in self.counters.values():
            counter.reset()
        for histogram in self.histograms.values():
            histogram.reset()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
