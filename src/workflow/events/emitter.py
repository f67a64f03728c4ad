"""Event emitter implementations for workflow observability.

This module defines an abstract EventEmitter interface and concrete
implementations for different event sinks:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The emitter abstraction lets the workflow service publish events without
coupling to specific monitoring infrastructure.

Source:
- src/workflow/events/models.py (WorkflowEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.workflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the workflow service.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters.

    Implementations should be:
    - Async-safe: emit() is called from async contexts
    - Fault-tolerant: emit() failures must not undo or fail a transition
      that has already been persisted

    Example:
        >>> class MyEmitter(EventEmitter):
        ...     async def emit(self, event: WorkflowEvent) -> None:
        ...         pass
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Emit a workflow event.

        Args:
            event: The workflow event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at different levels based on event type:

    - STAGE_TRANSITION: INFO level
    - JUSTIFICATION_REQUIRED: INFO level
    - BRANCH: INFO level
    - CONFLICT: WARNING level
    - ERROR: ERROR level

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(event)
        # Logs: INFO - Workflow event: stage_transition for ITEM-7
    """

    def __init__(self, logger_name: Optional[str] = None):
        """Initialize the logging event emitter.

        Args:
            logger_name: Optional logger name. If not provided, uses
                         the module logger.
        """
        self._logger = (
            logging.getLogger(logger_name)
            if logger_name
            else logger
        )
        self._log_level_map = {
            EventType.STAGE_TRANSITION: logging.INFO,
            EventType.JUSTIFICATION_REQUIRED: logging.INFO,
            EventType.BRANCH: logging.INFO,
            EventType.CONFLICT: logging.WARNING,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)

        self._logger.log(
            log_level,
            "Workflow event: %s for %s",
            event.event_type.value,
            event.work_item_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans one workflow event out to several sinks.

    A transition is already persisted when its event is emitted, so a
    failing sink is logged and skipped; the remaining sinks still receive
    the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    def remove_emitter(self, emitter: EventEmitter) -> bool:
        """Detach a sink. Returns False when it was not attached."""
        if emitter not in self._emitters:
            return False
        self._emitters.remove(emitter)
        return True

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s dropped %s for %s",
                    type(emitter).__name__,
                    event.event_type.value,
                    event.work_item_id,
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "work_item_id": event.work_item_id,
                        "pipeline": event.pipeline,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close event sink %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Sink used by a WorkflowService built without one."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for the configured WORKFLOW_EVENT_SINKS.

    Repeated sink types are collapsed so an event is never logged or
    counted twice. No sinks means logging only.
    """
    emitters: List[EventEmitter] = []
    seen = set()

    for sink_type in sink_types or [EventSinkType.LOGGING]:
        if sink_type in seen:
            continue
        seen.add(sink_type)
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports EventEmitter from this module
            from src.workflow.events.metrics import MetricsEventEmitter
            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
