"""Prometheus-compatible metrics for turn-taking observability.

This module provides metrics collection for monitoring:
- Segmentation (utterances finalized/discarded, utterance duration)
- Turn-taking (barge-in events, standby transitions, re-arms)
- Policy (rate-limit refusals per request kind)
- Load (active sessions and captures)

Metrics are kept in memory and rendered in Prometheus exposition format by
the /metrics endpoint (see turnkeeper.health).

Architecture:
    Segmenter / Session / Pipeline → MetricsCollector.record_*()
                                          ↓
                          series keyed by (name, labels) → export_prometheus()
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Upper bounds in seconds; covers the useful range for spoken utterances
DURATION_BUCKETS: tuple[float, ...] = (0.5, 1.0, 2.0, 3.0, 5.0, 8.0, 12.0, 15.0, 30.0)

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def _render_labels(labels: dict[str, str]) -> str:
    """Render a label set as '{a="1",b="2"}', or '' when empty."""
    if not labels:
        return ""
    return "{" + ",".join(f'{key}="{value}"' for key, value in sorted(labels.items())) + "}"


@dataclass
class HistogramBucket:
    """Cumulative bucket: observations less than or equal to ``le``."""

    le: float
    count: int = 0


@dataclass
class Histogram:
    """Fixed-bucket histogram of observed values."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    bounds: tuple[float, ...] = DURATION_BUCKETS
    buckets: list[HistogramBucket] = field(init=False)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        self.buckets = [HistogramBucket(le=bound) for bound in self.bounds]
        self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate quantile as the bound of the first bucket reaching it.

        Returns:
            Bucket upper bound, or None before any observation
        """
        if not self.count:
            return None
        rank = q * self.count
        return next((b.le for b in self.buckets if b.count >= rank), self.buckets[-1].le)

    def render(self) -> list[str]:
        labels = _render_labels(self.labels)
        samples = [
            f"{self.name}_bucket{_render_labels({**self.labels, 'le': str(b.le)})} {b.count}"
            for b in self.buckets
        ]
        samples.append(f"{self.name}_sum{labels} {self.sum}")
        samples.append(f"{self.name}_count{labels} {self.count}")
        return samples


@dataclass
class Counter:
    """Monotonically increasing series."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def render(self) -> list[str]:
        return [f"{self.name}{_render_labels(self.labels)} {self.value}"]


@dataclass
class Gauge(Counter):
    """Series that can go up or down."""

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount

    def set(self, value: float) -> None:
        self.value = value


class MetricsCollector:
    """In-memory metrics with Prometheus exposition output.

    One collector is owned by the SessionRegistry and shared with the
    sessions, segmenters and pipelines it creates. Counters are created
    lazily per label set; gauges and the duration histogram exist from the
    start so they are always exported.

    Thread-safety: all public methods take an internal RLock.
    """

    _HELP: dict[str, str] = {
        "utterances_finalized_total": "Utterances emitted for transcription",
        "utterances_discarded_total": "Utterances dropped without emission",
        "barge_in_total": "Playback interruptions triggered by speech",
        "rate_limited_total": "Requests refused by the rate limiter",
        "rearm_total": "Captures recreated after their stream ended",
        "standby_transitions_total": "Standby on/off transitions",
    }

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters: dict[tuple[str, LabelKey], Counter] = {}
        self._gauges = {
            "sessions_active": Gauge("sessions_active", "Number of active destination sessions"),
            "captures_active": Gauge("captures_active", "Number of active participant captures"),
        }
        self._durations = Histogram(
            "utterance_duration_seconds", "Duration of finalized utterances in seconds"
        )
        logger.debug("MetricsCollector initialized")

    def _inc(self, name: str, **labels: str) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = self._counters[key] = Counter(
                    name, self._HELP.get(name, name), dict(labels)
                )
            counter.inc()

    def _adjust(self, gauge: str, delta: float) -> None:
        with self._lock:
            self._gauges[gauge].inc(delta)

    # === Segmentation ===

    def record_utterance_finalized(self, reason: str, duration_seconds: float) -> None:
        self._inc("utterances_finalized_total", reason=reason)
        with self._lock:
            self._durations.observe(duration_seconds)

    def record_utterance_discarded(self, reason: str) -> None:
        self._inc("utterances_discarded_total", reason=reason)

    # === Turn-taking ===

    def record_barge_in(self) -> None:
        self._inc("barge_in_total")

    def record_standby(self, entered: bool) -> None:
        self._inc("standby_transitions_total", state="on" if entered else "off")

    def record_rearm(self) -> None:
        self._inc("rearm_total")

    def record_rate_limited(self, kind: str) -> None:
        self._inc("rate_limited_total", kind=kind)

    # === Load ===

    def record_session_start(self) -> None:
        self._adjust("sessions_active", 1)

    def record_session_end(self) -> None:
        self._adjust("sessions_active", -1)

    def record_capture_start(self) -> None:
        self._adjust("captures_active", 1)

    def record_capture_end(self) -> None:
        self._adjust("captures_active", -1)

    # === Queries ===

    def counter_value(self, name: str, **labels: str) -> float:
        """Current value of a counter series (0.0 if never incremented)."""
        with self._lock:
            counter = self._counters.get((name, _label_key(labels)))
            return counter.value if counter else 0.0

    def gauge_value(self, name: str) -> float:
        with self._lock:
            return self._gauges[name].value

    def _total(self, name: str) -> float:
        return sum(c.value for (n, _), c in self._counters.items() if n == name)

    # === Export ===

    def export_prometheus(self) -> str:
        """Render every series in Prometheus text format.

        Series sharing a name get a single HELP/TYPE header.
        """
        with self._lock:
            families: dict[str, tuple[str, str, list[str]]] = {}
            series: list[tuple[str, Counter | Histogram]] = [
                ("counter", c) for c in sorted(self._counters.values(), key=lambda c: c.name)
            ]
            series += [("gauge", g) for g in self._gauges.values()]
            series.append(("histogram", self._durations))

            for kind, metric in series:
                family = families.setdefault(metric.name, (kind, metric.help, []))
                family[2].extend(metric.render())

            lines: list[str] = []
            for name, (kind, help_text, samples) in families.items():
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                lines.extend(samples)
            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float | None]:
        """Flat summary for the JSON metrics endpoint."""
        with self._lock:
            return {
                "sessions_active": self.gauge_value("sessions_active"),
                "captures_active": self.gauge_value("captures_active"),
                "utterances_finalized": self._total("utterances_finalized_total"),
                "utterances_discarded": self._total("utterances_discarded_total"),
                "barge_ins": self._total("barge_in_total"),
                "rate_limited": self._total("rate_limited_total"),
                "rearms": self._total("rearm_total"),
                "utterance_duration_p50_s": self._durations.quantile(0.50),
                "utterance_duration_p95_s": self._durations.quantile(0.95),
            }
