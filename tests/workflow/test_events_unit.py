"""Unit tests for workflow event emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from src.workflow.events import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    NullEventEmitter,
    WorkflowEvent,
    WorkflowMetrics,
    create_event_emitter,
    generate_metrics_output,
)


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type: EventType, pipeline: str = "technical", **details) -> WorkflowEvent:
    return WorkflowEvent(
        event_type=event_type,
        work_item_id="LINE-1",
        pipeline=pipeline,
        details=details,
    )


@pytest.fixture
def metrics() -> WorkflowMetrics:
    return WorkflowMetrics(registry=CollectorRegistry())


def _sample(metrics: WorkflowMetrics, name: str, **labels) -> float:
    value = metrics.registry.get_sample_value(name, labels)
    return 0.0 if value is None else value


class TestWorkflowMetrics:
    def test_stage_gauge_starts_at_zero_for_every_stage(self, metrics) -> None:
        for pipeline in metrics.stages.pipelines:
            for stage in metrics.stages.stages_of(pipeline):
                assert metrics.registry.get_sample_value(
                    "workflow_work_items_by_stage",
                    {"pipeline": pipeline.value, "stage": stage.id},
                ) == 0.0

    def test_stage_count_never_negative(self, metrics) -> None:
        metrics.update_stage_count("sales", "tag", -1)
        assert _sample(metrics, "workflow_work_items_by_stage", pipeline="sales", stage="tag") == 0.0

        metrics.set_stage_count("sales", "tag", 4)
        metrics.update_stage_count("sales", "tag", -1)
        assert _sample(metrics, "workflow_work_items_by_stage", pipeline="sales", stage="tag") == 3.0

    def test_backward_transition_counts_twice(self, metrics) -> None:
        metrics.record_transition("technical", "alert", backward=True)
        metrics.record_transition("technical", "tech")

        assert _sample(metrics, "workflow_transitions_total", pipeline="technical", category="alert") == 1.0
        assert _sample(metrics, "workflow_backward_moves_total", pipeline="technical") == 1.0

    def test_output_is_prometheus_text(self, metrics) -> None:
        metrics.record_error("NoOpTransitionError")

        output = generate_metrics_output(metrics.registry).decode()

        assert "workflow_errors_total" in output
        assert 'error_type="NoOpTransitionError"' in output


class TestMetricsEventEmitter:
    def test_transition_moves_gauge_between_pipelines(self, metrics) -> None:
        emitter = MetricsEventEmitter(metrics=metrics)
        metrics.set_stage_count("sales", "receive-item", 1)

        run_async(
            emitter.emit(
                _event(
                    EventType.STAGE_TRANSITION,
                    from_pipeline="sales",
                    from_stage="receive-item",
                    to_stage="plating-room",
                    category="tech",
                    auto_chained=True,
                    backward=False,
                )
            )
        )

        assert _sample(metrics, "workflow_work_items_by_stage", pipeline="sales", stage="receive-item") == 0.0
        assert _sample(metrics, "workflow_work_items_by_stage", pipeline="technical", stage="plating-room") == 1.0
        assert _sample(metrics, "workflow_transitions_total", pipeline="technical", category="tech") == 1.0

    def test_creation_only_increments(self, metrics) -> None:
        emitter = MetricsEventEmitter(metrics=metrics)

        run_async(
            emitter.emit(
                _event(EventType.STAGE_TRANSITION, pipeline="sales", from_stage=None, to_stage="receive-item")
            )
        )

        assert _sample(metrics, "workflow_work_items_by_stage", pipeline="sales", stage="receive-item") == 1.0
        assert _sample(metrics, "workflow_transitions_total", pipeline="sales", category="info") == 0.0

    @pytest.mark.parametrize(
        "event_type,name,labels",
        [
            (EventType.JUSTIFICATION_REQUIRED, "workflow_pending_justifications_total", {"pipeline": "technical"}),
            (EventType.CONFLICT, "workflow_conflicts_total", {"pipeline": "technical"}),
            (EventType.ERROR, "workflow_errors_total", {"error_type": "UnknownStageError"}),
        ],
    )
    def test_counters(self, metrics, event_type, name, labels) -> None:
        emitter = MetricsEventEmitter(metrics=metrics)

        run_async(emitter.emit(_event(event_type, error_type="UnknownStageError")))

        assert metrics.registry.get_sample_value(name, labels) == 1.0


class TestLoggingEventEmitter:
    @pytest.mark.parametrize(
        "event_type,level",
        [
            (EventType.STAGE_TRANSITION, logging.INFO),
            (EventType.JUSTIFICATION_REQUIRED, logging.INFO),
            (EventType.BRANCH, logging.INFO),
            (EventType.CONFLICT, logging.WARNING),
            (EventType.ERROR, logging.ERROR),
        ],
    )
    def test_levels(self, caplog, event_type, level) -> None:
        emitter = LoggingEventEmitter(logger_name="workflow.test")

        with caplog.at_level(logging.DEBUG, logger="workflow.test"):
            run_async(emitter.emit(_event(event_type, to_stage="tag")))

        record = caplog.records[-1]
        assert record.levelno == level
        assert record.getMessage() == f"Workflow event: {event_type.value} for LINE-1"
        assert record.work_item_id == "LINE-1"
        assert record.to_stage == "tag"


class TestCompositeEventEmitter:
    def test_failure_in_one_sink_does_not_stop_others(self) -> None:
        failing = AsyncMock(spec=EventEmitter)
        failing.emit.side_effect = RuntimeError("boom")
        healthy = AsyncMock(spec=EventEmitter)
        composite = CompositeEventEmitter([failing, healthy])

        event = _event(EventType.BRANCH)
        run_async(composite.emit(event))

        healthy.emit.assert_awaited_once_with(event)

    def test_add_and_remove(self) -> None:
        composite = CompositeEventEmitter()
        child = NullEventEmitter()

        composite.add_emitter(child)
        assert composite.emitters == [child]
        assert composite.remove_emitter(child) is True
        assert composite.remove_emitter(child) is False

    def test_close_reaches_every_child(self) -> None:
        first = AsyncMock(spec=EventEmitter)
        first.close.side_effect = RuntimeError("already closed")
        second = AsyncMock(spec=EventEmitter)

        run_async(CompositeEventEmitter([first, second]).close())

        second.close.assert_awaited_once()


class TestCreateEventEmitter:
    def test_default_is_logging(self) -> None:
        assert isinstance(create_event_emitter(), LoggingEventEmitter)
        assert isinstance(create_event_emitter([]), LoggingEventEmitter)

    def test_single_sink_is_returned_directly(self) -> None:
        emitter = create_event_emitter([EventSinkType.LOGGING])
        assert isinstance(emitter, LoggingEventEmitter)

    def test_both_sinks_compose(self) -> None:
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(child) for child in emitter.emitters] == [
            LoggingEventEmitter,
            MetricsEventEmitter,
        ]

    def test_repeated_sinks_collapse(self) -> None:
        emitter = create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.LOGGING, EventSinkType.METRICS]
        )

        assert [type(child) for child in emitter.emitters] == [
            LoggingEventEmitter,
            MetricsEventEmitter,
        ]

    def test_repeated_single_sink_is_not_composed(self) -> None:
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.LOGGING])
        assert isinstance(emitter, LoggingEventEmitter)


class TestWorkflowEvent:
    def test_log_dict_flattens_details(self) -> None:
        event = _event(EventType.CONFLICT, pipeline="sales", expected_version=3)

        flat = event.to_log_dict()

        assert flat["event_type"] == "conflict"
        assert flat["pipeline"] == "sales"
        assert flat["expected_version"] == 3
        assert flat["timestamp"] == event.timestamp.isoformat()
