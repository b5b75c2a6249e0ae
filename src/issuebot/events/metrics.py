"""Prometheus metrics for orchestration runs.

Metrics:
- issuebot_runs_total{flow, result}: finished runs by terminal result
- issuebot_run_failures_total{flow, stage}: failures by the stage that failed
- issuebot_run_duration_seconds{flow}: wall time of finished runs
- issuebot_changed_files{flow}: size of published change sets

Exposed in text format on the service's ``/metrics`` endpoint.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.issuebot.events.emitter import EventEmitter
from src.issuebot.events.models import EventType, RunEvent

logger = logging.getLogger(__name__)

# Agent runs take from seconds to tens of minutes.
DURATION_BUCKETS = (5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0)
CHANGED_FILES_BUCKETS = (1, 2, 5, 10, 20, 50, 100)


class RunMetrics:
    """Prometheus collectors for orchestration runs.

    Pass a fresh CollectorRegistry in tests to avoid duplicate
    registration against the global registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_total = Counter(
            "issuebot_runs_total",
            "Total number of finished orchestration runs",
            labelnames=["flow", "result"],
            registry=self.registry,
        )
        self.run_failures_total = Counter(
            "issuebot_run_failures_total",
            "Total number of failed orchestration runs by failing stage",
            labelnames=["flow", "stage"],
            registry=self.registry,
        )
        self.run_duration_seconds = Histogram(
            "issuebot_run_duration_seconds",
            "Wall time of orchestration runs in seconds",
            labelnames=["flow"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.changed_files = Histogram(
            "issuebot_changed_files",
            "Number of files in published change sets",
            labelnames=["flow"],
            buckets=CHANGED_FILES_BUCKETS,
            registry=self.registry,
        )

    def record_run(self, flow: str, result: str, duration_seconds: Optional[float]) -> None:
        self.runs_total.labels(flow=flow, result=result).inc()
        if duration_seconds is not None:
            self.run_duration_seconds.labels(flow=flow).observe(duration_seconds)

    def record_failure(self, flow: str, stage: str) -> None:
        self.run_failures_total.labels(flow=flow, stage=stage).inc()


_default_metrics: Optional[RunMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> RunMetrics:
    """Return the process-wide metrics, or a new instance for a custom registry."""
    global _default_metrics

    if registry is not None:
        return RunMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = RunMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Updates RunMetrics from run events.

    - COMPLETION: run counted with result from ``details["status"]``,
      duration and change-set size observed
    - NO_CHANGES: run counted as "no_changes"
    - ERROR: failure counted by ``details["stage"]`` and the run counted
      as "failure"
    """

    def __init__(
        self,
        metrics: Optional[RunMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> RunMetrics:
        return self._metrics

    async def emit(self, event: RunEvent) -> None:
        try:
            duration = event.details.get("duration_seconds")
            if event.event_type == EventType.COMPLETION:
                self._metrics.record_run(
                    event.flow, event.details.get("status", "success"), duration
                )
                changed = event.details.get("changed_files")
                if changed is not None:
                    self._metrics.changed_files.labels(flow=event.flow).observe(changed)
            elif event.event_type == EventType.NO_CHANGES:
                self._metrics.record_run(event.flow, "no_changes", duration)
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failure(
                    event.flow, event.details.get("stage", "unknown")
                )
                self._metrics.record_run(event.flow, "failure", duration)
        except Exception as exc:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                exc,
                extra={"request_id": event.request_id},
            )
