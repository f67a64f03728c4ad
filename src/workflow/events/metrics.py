"""Prometheus metrics for workflow observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- workflow_transitions_total: Counter of applied transitions
- workflow_backward_moves_total: Counter of justified backward moves
- workflow_pending_justifications_total: Counter of held backward moves
- workflow_conflicts_total: Counter of optimistic locking conflicts
- workflow_errors_total: Counter of rejected requests
- workflow_work_items_by_stage: Gauge of current work items per stage

The MetricsEventEmitter updates these metrics from workflow events.

Source:
- src/workflow/events/models.py (WorkflowEvent, EventType)
- src/workflow/stages/registry.py (stage catalog for the gauge labels)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.stages.registry import REGISTRY as STAGE_REGISTRY
from src.workflow.stages.registry import StageRegistry


logger = logging.getLogger(__name__)


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Supports custom registries for testing.

    Metrics:
        transitions_total: Applied transitions.
            Labels: pipeline, category

        backward_moves_total: Justified backward moves.
            Labels: pipeline

        pending_justifications_total: Backward moves held for a reason.
            Labels: pipeline

        conflicts_total: Writes rejected by the version check.
            Labels: pipeline

        errors_total: Requests rejected by a workflow rule.
            Labels: error_type

        work_items_by_stage: Current number of work items per stage.
            Labels: pipeline, stage

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("technical", "tech")
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        stages: Optional[StageRegistry] = None,
    ):
        """Initialize workflow metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
            stages: Stage catalog used to pre-populate the stage gauge.
        """
        self.registry = registry or REGISTRY
        self.stages = stages or STAGE_REGISTRY

        self.transitions_total = Counter(
            "workflow_transitions_total",
            "Total number of applied stage transitions",
            labelnames=["pipeline", "category"],
            registry=self.registry,
        )

        self.backward_moves_total = Counter(
            "workflow_backward_moves_total",
            "Total number of justified backward moves",
            labelnames=["pipeline"],
            registry=self.registry,
        )

        self.pending_justifications_total = Counter(
            "workflow_pending_justifications_total",
            "Total number of backward moves held for a justification",
            labelnames=["pipeline"],
            registry=self.registry,
        )

        self.conflicts_total = Counter(
            "workflow_conflicts_total",
            "Total number of concurrent modification conflicts",
            labelnames=["pipeline"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            "workflow_errors_total",
            "Total number of requests rejected by a workflow rule",
            labelnames=["error_type"],
            registry=self.registry,
        )

        self.work_items_by_stage = Gauge(
            "workflow_work_items_by_stage",
            "Current number of work items in each stage",
            labelnames=["pipeline", "stage"],
            registry=self.registry,
        )

        for pipeline in self.stages.pipelines:
            for stage in self.stages.stages_of(pipeline):
                self.work_items_by_stage.labels(
                    pipeline=pipeline.value, stage=stage.id
                ).set(0)

    def record_transition(
        self,
        pipeline: str,
        category: str,
        backward: bool = False,
    ) -> None:
        self.transitions_total.labels(pipeline=pipeline, category=category).inc()
        if backward:
            self.backward_moves_total.labels(pipeline=pipeline).inc()

    def record_pending_justification(self, pipeline: str) -> None:
        self.pending_justifications_total.labels(pipeline=pipeline).inc()

    def record_conflict(self, pipeline: str) -> None:
        self.conflicts_total.labels(pipeline=pipeline).inc()

    def record_error(self, error_type: str) -> None:
        self.errors_total.labels(error_type=error_type).inc()

    def update_stage_count(
        self,
        pipeline: str,
        stage: str,
        delta: int,
    ) -> None:
        """Update the count of work items in a stage.

        Args:
            pipeline: Pipeline of the stage.
            stage: The stage id to update.
            delta: The change in count (+1 for entering, -1 for leaving).
        """
        gauge = self.work_items_by_stage.labels(pipeline=pipeline, stage=stage)
        current = gauge._value.get()
        gauge.set(max(0, current + delta))

    def set_stage_count(
        self,
        pipeline: str,
        stage: str,
        count: int,
    ) -> None:
        self.work_items_by_stage.labels(pipeline=pipeline, stage=stage).set(
            max(0, count)
        )


# Global metrics instance for the default registry
_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get or create the workflow metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STAGE_TRANSITION / BRANCH: transition counters and stage gauge
    - JUSTIFICATION_REQUIRED: pending justification counter
    - CONFLICT: conflict counter
    - ERROR: error counter by exception type

    Attributes:
        metrics: The WorkflowMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        try:
            if event.event_type in (EventType.STAGE_TRANSITION, EventType.BRANCH):
                await self._handle_transition(event)
            elif event.event_type == EventType.JUSTIFICATION_REQUIRED:
                self._metrics.record_pending_justification(event.pipeline)
            elif event.event_type == EventType.CONFLICT:
                self._metrics.record_conflict(event.pipeline)
            elif event.event_type == EventType.ERROR:
                self._metrics.record_error(
                    event.details.get("error_type", "unknown")
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "work_item_id": event.work_item_id,
                    "error": str(e),
                },
            )

    async def _handle_transition(self, event: WorkflowEvent) -> None:
        """Move one unit of the stage gauge and count the transition.

        An event without from_stage is a newly created item.
        """
        from_stage = event.details.get("from_stage")
        from_pipeline = event.details.get("from_pipeline", event.pipeline)
        to_stage = event.details.get("to_stage")

        if from_stage:
            self._metrics.update_stage_count(from_pipeline, from_stage, -1)
        if to_stage:
            self._metrics.update_stage_count(event.pipeline, to_stage, +1)

        category = event.details.get("category")
        if category:
            self._metrics.record_transition(
                event.pipeline,
                category,
                backward=bool(event.details.get("backward")),
            )
