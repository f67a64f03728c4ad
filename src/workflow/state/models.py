"""Work item and transition models.

This module defines the data models for movable work items:
- WorkItemKind: Business entity a work item stands for
- HistoryEntry: Immutable record of one accepted transition
- WorkItem: The movable entity with its stage and owned history
- NotificationHint: What the caller may notify after a transition
- TransitionApplied / PendingJustification: Outcomes of a transition attempt

Work items are never mutated in place by the engine. Every accepted
transition produces a new WorkItem carrying the new stage, the new history
head and an incremented version, so stage and history always travel
together.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.stages.models import HistoryCategory, PipelineKind


class WorkItemKind(str, Enum):
    """Business entity a work item tracks."""

    LEAD = "lead"
    ORDER = "order"
    ORDER_ITEM = "order_item"
    EXTENSION_REQUEST = "extension_request"
    ACCESSORY_REQUEST = "accessory_request"
    PARTNER_REQUEST = "partner_request"


class HistoryEntry(BaseModel):
    """Record of one accepted transition.

    Entries are frozen: once appended to a ledger they are never edited
    or removed.

    Attributes:
        timestamp: When the transition was applied (UTC).
        actor: Identity of the caller that requested the transition.
        action_description: Human-readable summary of the move.
        category: Display category of the entry.
        pipeline: Pipeline of the destination stage.
        from_stage: Stage id before the move, if any.
        to_stage: Stage id after the move.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition was applied (UTC timezone)",
    )

    actor: str = Field(..., min_length=1)

    action_description: str = Field(..., min_length=1)

    category: HistoryCategory

    pipeline: PipelineKind

    from_stage: Optional[str] = None

    to_stage: str


class WorkItem(BaseModel):
    """A lead, order, order line-item or request moving through a pipeline.

    Attributes:
        id: Identifier of the underlying business entity.
        kind: Business entity the item tracks.
        pipeline: Pipeline of the currently occupied stage.
        stage_id: Currently occupied stage.
        attributes: Domain attributes (customer, due dates, notes, ...).
        history: Ledger entries, newest first.
        archived: True while the item sits on a terminal stage.
        created_at: When the item was created (UTC).
        updated_at: When the item was last changed (UTC).
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1)

    kind: WorkItemKind = WorkItemKind.ORDER_ITEM

    pipeline: PipelineKind

    stage_id: str = Field(..., min_length=1)

    attributes: Dict[str, Any] = Field(default_factory=dict)

    history: Tuple[HistoryEntry, ...] = Field(
        default_factory=tuple,
        description="Ledger entries, newest first",
    )

    archived: bool = False

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    version: int = Field(default=1, ge=1)


class NotificationHint(BaseModel):
    """Notification the caller may send after a successful transition.

    The engine never notifies anybody itself.

    Attributes:
        pipeline: Pipeline the item entered.
        stage_id: Stage the item entered.
        audience: Who should hear about it ("technician" or "sales").
    """

    model_config = ConfigDict(frozen=True)

    pipeline: PipelineKind
    stage_id: str
    audience: str


class TransitionApplied(BaseModel):
    """Outcome of an accepted transition.

    Attributes:
        item: The work item after the transition.
        entry: The ledger entry appended for it.
        requested_stage_id: The stage the caller asked for.
        from_pipeline: Pipeline before the move.
        from_stage_id: Stage before the move.
        auto_chained: True when the request was redirected into the next
                      pipeline's entry stage.
        backward: True for a justified backward move.
        notification: Optional hint for the caller's notification fan-out.
    """

    outcome: Literal["applied"] = "applied"
    item: WorkItem
    entry: HistoryEntry
    requested_stage_id: str
    from_pipeline: PipelineKind
    from_stage_id: str
    auto_chained: bool = False
    backward: bool = False
    notification: Optional[NotificationHint] = None


class PendingJustification(BaseModel):
    """A backward move held until the caller supplies a reason.

    Nothing was mutated. Re-submitting with a non-empty reason (and, when
    going through the service, the same expected_version) applies the move.

    Attributes:
        work_item_id: The work item the request targeted.
        pipeline: Pipeline the item still occupies.
        target_stage_id: The resolved destination of the backward move.
        current_stage_id: The stage the item still occupies.
        expected_version: Version the confirmation must be based on.
    """

    outcome: Literal["pending_justification"] = "pending_justification"
    work_item_id: str
    pipeline: PipelineKind
    target_stage_id: str
    current_stage_id: str
    expected_version: int


TransitionOutcome = Union[TransitionApplied, PendingJustification]
