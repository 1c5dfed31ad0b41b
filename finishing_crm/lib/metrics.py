"""
Process-local counters and gauges exported in Prometheus text format.

Usage:
    from finishing_crm.lib.metrics import get_metrics_collector

    metrics = get_metrics_collector()
    metrics.increment_jobs_processed(job_type="send_offer_email", outcome="completed")
    text = metrics.export_prometheus()
"""
from threading import Lock
from typing import Dict, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

# name -> (type, help)
METRICS: Dict[str, Tuple[str, str]] = {
    "outbox_jobs_enqueued_total": ("counter", "Total number of outbox jobs enqueued"),
    "outbox_jobs_processed_total": ("counter", "Total number of outbox job attempts by outcome"),
    "outbox_last_run_jobs": ("gauge", "Jobs processed by the most recent outbox run"),
    "outbox_last_run_timestamp_seconds": ("gauge", "Unix time the most recent outbox run finished"),
    "emails_sent_total": ("counter", "Total number of individual email sends"),
    "engagement_events_total": ("counter", "Total number of engagement events recorded"),
    "scheduled_job_runs_total": ("counter", "Background scheduler executions by job and outcome"),
}


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _label_set(labels: Dict[str, str]) -> LabelSet:
    return tuple(sorted((k, str(v).lower()) for k, v in labels.items()))


class MetricsCollector:
    """Thread-safe store for the metrics declared in METRICS."""

    def __init__(self):
        self._lock = Lock()
        self._values: Dict[Tuple[str, LabelSet], float] = {}

    def _check(self, name: str, kind: str) -> None:
        if METRICS.get(name, (None,))[0] != kind:
            raise KeyError(f"{name} is not a declared {kind}")

    def inc(self, name: str, amount: int = 1, **labels: str) -> None:
        self._check(name, "counter")
        key = (name, _label_set(labels))
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._check(name, "gauge")
        with self._lock:
            self._values[(name, _label_set(labels))] = value

    def increment_jobs_enqueued(self, job_type: str, amount: int = 1):
        self.inc("outbox_jobs_enqueued_total", amount, job_type=job_type)

    def increment_jobs_processed(self, job_type: str, outcome: str, amount: int = 1):
        """outcome is one of completed, retry_scheduled, dead."""
        self.inc("outbox_jobs_processed_total", amount, job_type=job_type, outcome=outcome)

    def increment_emails(self, status: str, amount: int = 1):
        self.inc("emails_sent_total", amount, status=status)

    def increment_engagement_events(self, event_type: str, amount: int = 1):
        self.inc("engagement_events_total", amount, event_type=event_type)

    def increment_scheduled_runs(self, job_id: str, outcome: str):
        self.inc("scheduled_job_runs_total", job_id=job_id, outcome=outcome)

    def record_outbox_run(self, processed: int, finished_at_ts: float):
        self.set_gauge("outbox_last_run_jobs", processed)
        self.set_gauge("outbox_last_run_timestamp_seconds", finished_at_ts)

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> float:
        with self._lock:
            return self._values.get((metric_name, _label_set(labels)), 0)

    def export_prometheus(self) -> str:
        """Render every metric with at least one sample, families sorted by name."""
        with self._lock:
            snapshot = dict(self._values)

        families: Dict[str, list] = {}
        for (name, labels), value in snapshot.items():
            families.setdefault(name, []).append((labels, value))

        lines = []
        for name in sorted(families):
            kind, help_text = METRICS[name]
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            for labels, value in sorted(families[name]):
                rendered = ",".join(f'{k}="{v}"' for k, v in labels)
                sample = f"{name}{{{rendered}}}" if rendered else name
                lines.append(f"{sample} {_format_value(value)}")
            lines.append("")

        return "\n".join(lines)

    def reset_all(self):
        with self._lock:
            self._values.clear()


_metrics_collector: MetricsCollector | None = None
_metrics_lock = Lock()


def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector
    if _metrics_collector is None:
        with _metrics_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics():
    """Zero the global collector (tests)."""
    with _metrics_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset_all()
