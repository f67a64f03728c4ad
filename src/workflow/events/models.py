"""Workflow event models for observability.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the workflow service
- WorkflowEvent: Structured event with all required metadata

Events are emitted after the repository write has succeeded, so a sink
only ever sees facts that are durable. They are for monitoring and
debugging; the history ledger stays the audit trail of record.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the workflow service.

    Event Categories:
        STAGE_TRANSITION: A work item moved to another stage, including
            auto-chained and justified backward moves.

        JUSTIFICATION_REQUIRED: A backward move was held until the caller
            supplies a reason. Nothing changed.

        BRANCH: A branch resolver decision was applied (feedback routing,
            extension approval or rejection, request approval).

        CONFLICT: A write lost the optimistic locking race.

        ERROR: A request failed for a reason other than a conflict.
    """

    STAGE_TRANSITION = "stage_transition"
    JUSTIFICATION_REQUIRED = "justification_required"
    BRANCH = "branch"
    CONFLICT = "conflict"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow service.

    Attributes:
        event_type: The category of event.
        work_item_id: The work item the event concerns.
        pipeline: Pipeline the item occupies after the event.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = WorkflowEvent(
        ...     event_type=EventType.STAGE_TRANSITION,
        ...     work_item_id="ITEM-7",
        ...     pipeline="technical",
        ...     details={
        ...         "from_pipeline": "sales",
        ...         "from_stage": "receive-item",
        ...         "to_stage": "plating-room",
        ...         "category": "tech",
        ...     }
        ... )

    Details Field Conventions:
        For STAGE_TRANSITION and BRANCH events:
            - from_pipeline / from_stage: Where the item was
            - to_stage: Where the item is now
            - category: History category of the ledger entry
            - actor: Who requested the move
            - auto_chained / backward: Flags of the applied move

        For JUSTIFICATION_REQUIRED events:
            - current_stage / target_stage
            - expected_version

        For CONFLICT events:
            - expected_version / actual_version

        For ERROR events:
            - error_type: Exception class name
            - error_message: Human-readable error description
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    work_item_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the work item the event concerns",
    )

    pipeline: str = Field(
        ...,
        min_length=1,
        description="Pipeline the work item occupies after the event",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary for structured logging.

        Example:
            >>> event = WorkflowEvent(
            ...     event_type=EventType.CONFLICT,
            ...     work_item_id="ITEM-7",
            ...     pipeline="sales",
            ...     details={"expected_version": 3}
            ... )
            >>> event.to_log_dict()["event_type"]
            'conflict'
        """
        return {
            "event_type": self.event_type.value,
            "work_item_id": self.work_item_id,
            "pipeline": self.pipeline,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
