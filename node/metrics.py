"""
Metrics sinks for the relay node.
Named counters and gauges, exported in the Prometheus text format.
"""
import logging
import threading
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST

logger = logging.getLogger("metrics")

# name -> (help text, label names)
GAUGES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "relay_active_connections": ("Currently active tunnel sessions", ("protocol", "node")),
    "relay_node_status": ("Node status (1 = online, 0 = offline)", ("node", "country", "city")),
    "relay_node_load_score": ("Composite node load score", ("node",)),
    "relay_node_cpu_usage": ("Host CPU usage in percent", ("node",)),
    "relay_node_memory_usage": ("Host memory usage in percent", ("node",)),
    "relay_node_bandwidth_gbps": ("Tunnel interface bandwidth in Gbps", ("node",)),
}

COUNTERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "relay_connections_total": ("Tunnel sessions created or refused", ("protocol", "node", "status")),
}


class MetricsSink:
    """Interface for publishing named counters and gauges"""

    def inc_counter(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        raise NotImplementedError

    def set_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0) -> None:
        raise NotImplementedError

    def add_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        raise NotImplementedError

    def render(self) -> bytes:
        return b""

    content_type = CONTENT_TYPE_LATEST


class NullMetricsSink(MetricsSink):
    """Discards everything"""

    def inc_counter(self, name, labels=None, value=1):
        pass

    def set_gauge(self, name, labels=None, value=0):
        pass

    def add_gauge(self, name, labels=None, value=1):
        pass


class PrometheusMetricsSink(MetricsSink):
    """
    Metrics sink backed by prometheus_client.

    Each sink owns a private CollectorRegistry so several sinks (one per test,
    or one per coordinator) never collide on metric names. Metrics outside the
    predefined set are created on first use with the label names they are
    first used with.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self._gauges: Dict[str, Gauge] = {}
        self._counters: Dict[str, Counter] = {}

        for name, (help_text, label_names) in GAUGES.items():
            self._gauges[name] = Gauge(name, help_text, label_names, registry=self.registry)
        for name, (help_text, label_names) in COUNTERS.items():
            self._counters[name] = Counter(name, help_text, label_names, registry=self.registry)

    def _gauge(self, name: str, labels: Dict[str, str]) -> Gauge:
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name, name, sorted(labels), registry=self.registry)
            return self._gauges[name]

    def _counter(self, name: str, labels: Dict[str, str]) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, name, sorted(labels), registry=self.registry)
            return self._counters[name]

    @staticmethod
    def _labelled(metric, labels: Dict[str, str]):
        if not labels:
            return metric
        return metric.labels(**{key: str(value) for key, value in labels.items()})

    def inc_counter(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        labels = labels or {}
        self._labelled(self._counter(name, labels), labels).inc(value)

    def set_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0) -> None:
        labels = labels or {}
        self._labelled(self._gauge(name, labels), labels).set(value)

    def add_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        labels = labels or {}
        self._labelled(self._gauge(name, labels), labels).inc(value)

    def get_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """
        Read back a sample value

        Args:
            name: Sample name (counters end in ``_total``)
            labels: Label values of the sample

        Returns:
            The sample value, or None if it has never been set
        """
        labels = {key: str(value) for key, value in (labels or {}).items()}
        return self.registry.get_sample_value(name, labels)

    def render(self) -> bytes:
        """Prometheus text exposition of every metric in the registry"""
        return generate_latest(self.registry)
