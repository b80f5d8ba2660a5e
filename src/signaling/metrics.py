"""Prometheus-compatible metrics for signaling server observability.

This module provides metrics collection for monitoring:
- Connection churn (open connections, total accepted)
- Room occupancy (rooms held, participants seated, room lifetime)
- Admission (accepted joins, capacity rejections)
- Relay traffic (envelopes relayed by kind, envelopes dropped by reason)
- Chat volume

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    SignalingServer → MetricsCollector → /metrics, /metrics/summary
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Metric types following Prometheus conventions."""

    COUNTER = "counter"  # Monotonically increasing (e.g., joins_total)
    GAUGE = "gauge"  # Can go up or down (e.g., rooms_active)
    HISTOGRAM = "histogram"  # Distribution (e.g., room_lifetime_seconds)


@dataclass
class HistogramBucket:
    """Histogram bucket for duration distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


@dataclass
class Histogram:
    """Histogram metric for tracking distributions.

    Buckets cover one second to four hours, the useful range for call rooms.
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=1.0),
            HistogramBucket(le=10.0),
            HistogramBucket(le=30.0),
            HistogramBucket(le=60.0),
            HistogramBucket(le=300.0),  # 5m
            HistogramBucket(le=900.0),  # 15m
            HistogramBucket(le=1800.0),  # 30m
            HistogramBucket(le=3600.0),  # 1h
            HistogramBucket(le=14400.0),  # 4h
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value in seconds
        """
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increment counter.

        Args:
            amount: Amount to increment by (default: 1.0)
        """
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set gauge value."""
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        """Increment gauge."""
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        """Decrement gauge."""
        self.value -= amount


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Labeled series (relay kind, drop reason) are created on first use and
    exported under a single HELP/TYPE header per metric name.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        """Initialize metrics collector."""
        self._lock = threading.RLock()

        # Metrics storage (keyed by metric name plus label values)
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_connection_metrics()
        self._init_room_metrics()
        self._init_relay_metrics()

        logger.info("MetricsCollector initialized")

    def _init_connection_metrics(self) -> None:
        """Initialize connection metrics."""
        self._gauges["connections_active"] = Gauge(
            name="signaling_connections_active",
            help="Number of open signaling connections",
        )
        self._counters["connections_total"] = Counter(
            name="signaling_connections_total",
            help="Total number of signaling connections accepted",
        )

    def _init_room_metrics(self) -> None:
        """Initialize room occupancy and admission metrics."""
        self._gauges["rooms_active"] = Gauge(
            name="signaling_rooms_active",
            help="Number of rooms held in memory",
        )
        self._gauges["participants_active"] = Gauge(
            name="signaling_participants_active",
            help="Number of participants currently seated in a room",
        )
        self._counters["joins_total"] = Counter(
            name="signaling_joins_total",
            help="Total number of accepted room joins",
        )
        self._counters["room_full_total"] = Counter(
            name="signaling_room_full_total",
            help="Total number of joins rejected because the room was full",
        )
        self._counters["chat_messages_total"] = Counter(
            name="signaling_chat_messages_total",
            help="Total number of chat messages broadcast",
        )
        self._histograms["room_lifetime_seconds"] = Histogram(
            name="signaling_room_lifetime_seconds",
            help="Time from room creation until its last member left",
        )

    def _init_relay_metrics(self) -> None:
        """Initialize relay metrics (labeled series are added lazily)."""
        self._help = {
            "signaling_relayed_total": "Total number of envelopes relayed by kind",
            "signaling_dropped_total": "Total number of envelopes dropped by reason",
        }

    def _labeled_counter(self, name: str, label: str, value: str) -> Counter:
        key = f"{name}:{value}"
        counter = self._counters.get(key)
        if counter is None:
            counter = Counter(name=name, help=self._help[name], labels={label: value})
            self._counters[key] = counter
        return counter

    # === Connection metrics ===

    def record_connection_open(self) -> None:
        """Record an accepted connection."""
        with self._lock:
            self._gauges["connections_active"].inc()
            self._counters["connections_total"].inc()

    def record_connection_closed(self) -> None:
        """Record a closed connection."""
        with self._lock:
            self._gauges["connections_active"].dec()

    # === Room metrics ===

    def record_join(self, accepted: bool) -> None:
        """Record a join attempt.

        Args:
            accepted: False when the room was at capacity
        """
        with self._lock:
            if accepted:
                self._counters["joins_total"].inc()
            else:
                self._counters["room_full_total"].inc()

    def set_room_stats(self, rooms: int, participants: int) -> None:
        """Update room occupancy gauges.

        Args:
            rooms: Rooms held in memory
            participants: Participants seated in a room
        """
        with self._lock:
            self._gauges["rooms_active"].set(float(rooms))
            self._gauges["participants_active"].set(float(participants))

    def record_room_emptied(self, lifetime_seconds: float) -> None:
        """Record the lifetime of a room whose last member left."""
        with self._lock:
            self._histograms["room_lifetime_seconds"].observe(lifetime_seconds)

    def record_chat(self) -> None:
        """Record a broadcast chat message."""
        with self._lock:
            self._counters["chat_messages_total"].inc()

    # === Relay metrics ===

    def record_relay(self, kind: str) -> None:
        """Record a relayed envelope.

        Args:
            kind: Envelope kind (offer, answer, ice-candidate, call-end)
        """
        with self._lock:
            self._labeled_counter("signaling_relayed_total", "kind", kind).inc()

    def record_drop(self, reason: str) -> None:
        """Record a dropped envelope or frame.

        Args:
            reason: Why it was dropped (e.g., not_in_room, target_unavailable)
        """
        with self._lock:
            self._labeled_counter("signaling_dropped_total", "reason", reason).inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []
            seen: set[str] = set()

            def header(name: str, help_text: str, metric_type: MetricType) -> None:
                if name in seen:
                    return
                seen.add(name)
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {metric_type.value}")

            for counter in self._counters.values():
                header(counter.name, counter.help, MetricType.COUNTER)
                labels_str = self._format_labels(counter.labels)
                lines.append(f"{counter.name}{labels_str} {counter.value}")

            for gauge in self._gauges.values():
                header(gauge.name, gauge.help, MetricType.GAUGE)
                labels_str = self._format_labels(gauge.labels)
                lines.append(f"{gauge.name}{labels_str} {gauge.value}")

            for histogram in self._histograms.values():
                header(histogram.name, histogram.help, MetricType.HISTOGRAM)
                labels_str = self._format_labels(histogram.labels)

                for bucket in histogram.buckets:
                    bucket_labels = {**histogram.labels, "le": str(bucket.le)}
                    bucket_labels_str = self._format_labels(bucket_labels)
                    lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels for Prometheus output.

        Args:
            labels: Label dictionary

        Returns:
            Formatted label string (e.g., '{label1="value1",label2="value2"}')
        """
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float]:
        """Get summary statistics for monitoring dashboard.

        Returns:
            Dictionary with key metrics; labeled series are summed
        """
        with self._lock:
            relayed = sum(
                c.value for c in self._counters.values() if c.name == "signaling_relayed_total"
            )
            dropped = sum(
                c.value for c in self._counters.values() if c.name == "signaling_dropped_total"
            )

            return {
                "connections_active": self._gauges["connections_active"].value,
                "connections_total": self._counters["connections_total"].value,
                "rooms_active": self._gauges["rooms_active"].value,
                "participants_active": self._gauges["participants_active"].value,
                "joins_total": self._counters["joins_total"].value,
                "room_full_total": self._counters["room_full_total"].value,
                "chat_messages_total": self._counters["chat_messages_total"].value,
                "relayed_total": relayed,
                "dropped_total": dropped,
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Returns:
        Global MetricsCollector instance

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
