"""Unit tests for run events, emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from src.issuebot.events.emitter import (
    CompositeEventEmitter,
    LoggingEventEmitter,
    NullEventEmitter,
)
from src.issuebot.events.metrics import MetricsEventEmitter, RunMetrics, generate_metrics_output
from src.issuebot.events.models import EventType, RunEvent


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type=EventType.COMPLETION, flow="issue", **details) -> RunEvent:
    return RunEvent(
        event_type=event_type,
        request_id="acme/widgets#42",
        repository="acme/widgets",
        flow=flow,
        details=details,
    )


@pytest.fixture
def registry():
    return CollectorRegistry()


class TestRunEvent:
    def test_log_dict_prefixes_details(self):
        data = _event(status="pr_created", changed_files=2).to_log_dict()

        assert data["event_type"] == "completion"
        assert data["request_id"] == "acme/widgets#42"
        assert data["detail_status"] == "pr_created"
        assert data["detail_changed_files"] == 2
        assert "status" not in data

    def test_timestamp_is_utc(self):
        assert _event().timestamp.tzinfo is not None


class TestLoggingEventEmitter:
    def test_error_events_log_at_error_level(self, caplog):
        emitter = LoggingEventEmitter("issuebot.test.events")

        with caplog.at_level(logging.INFO, logger="issuebot.test.events"):
            run_async(emitter.emit(_event(EventType.ERROR, stage="agent")))
            run_async(emitter.emit(_event(EventType.STATE_TRANSITION, to_stage="implementing")))

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.ERROR, logging.INFO]
        assert caplog.records[0].detail_stage == "agent"


class TestCompositeEventEmitter:
    def test_delivers_to_all_children(self):
        first, second = AsyncMock(), AsyncMock()
        composite = CompositeEventEmitter([first])
        composite.add_emitter(second)
        event = _event()

        run_async(composite.emit(event))

        first.emit.assert_awaited_once_with(event)
        second.emit.assert_awaited_once_with(event)
        assert len(composite.emitters) == 2

    def test_failing_child_does_not_block_others(self):
        broken, healthy = AsyncMock(), AsyncMock()
        broken.emit.side_effect = RuntimeError("sink down")
        broken.close.side_effect = RuntimeError("sink down")

        composite = CompositeEventEmitter([broken, healthy])
        run_async(composite.emit(_event()))
        run_async(composite.close())

        healthy.emit.assert_awaited_once()
        healthy.close.assert_awaited_once()

    def test_null_emitter_accepts_everything(self):
        assert run_async(NullEventEmitter().emit(_event())) is None


class TestMetricsEventEmitter:
    def test_completion_counts_run_and_observes_sizes(self, registry):
        emitter = MetricsEventEmitter(metrics=RunMetrics(registry=registry))

        run_async(emitter.emit(_event(status="pr_created", duration_seconds=12.5, changed_files=3)))

        assert registry.get_sample_value(
            "issuebot_runs_total", {"flow": "issue", "result": "pr_created"}
        ) == 1.0
        assert registry.get_sample_value(
            "issuebot_run_duration_seconds_sum", {"flow": "issue"}
        ) == 12.5
        assert registry.get_sample_value(
            "issuebot_changed_files_sum", {"flow": "issue"}
        ) == 3.0

    def test_error_counts_failure_by_stage(self, registry):
        emitter = MetricsEventEmitter(registry=registry)

        run_async(emitter.emit(_event(EventType.ERROR, flow="review", stage="agent")))

        assert registry.get_sample_value(
            "issuebot_run_failures_total", {"flow": "review", "stage": "agent"}
        ) == 1.0
        assert registry.get_sample_value(
            "issuebot_runs_total", {"flow": "review", "result": "failure"}
        ) == 1.0

    def test_no_changes_is_counted(self, registry):
        emitter = MetricsEventEmitter(registry=registry)
        run_async(emitter.emit(_event(EventType.NO_CHANGES)))

        assert registry.get_sample_value(
            "issuebot_runs_total", {"flow": "issue", "result": "no_changes"}
        ) == 1.0

    def test_state_transitions_are_not_counted(self, registry):
        emitter = MetricsEventEmitter(registry=registry)
        run_async(emitter.emit(_event(EventType.STATE_TRANSITION, to_stage="detecting")))

        assert registry.get_sample_value(
            "issuebot_runs_total", {"flow": "issue", "result": "success"}
        ) is None

    def test_output_is_prometheus_text(self, registry):
        RunMetrics(registry=registry).record_run("issue", "pr_created", 1.0)
        output = generate_metrics_output(registry).decode()
        assert "issuebot_runs_total" in output
