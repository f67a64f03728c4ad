"""Transition engine: the single authority for changing a work item's stage.

The engine is pure decision logic. It holds no state between calls and
performs no I/O; the caller loads the work item, hands it in, and persists
the item returned inside a TransitionApplied outcome.

Rules, in evaluation order:
1. The target must be registered in the item's pipeline or in another
   pipeline of its lifecycle chain (UnknownStageError otherwise).
2. Requesting the occupied stage is rejected (NoOpTransitionError).
3. Auto-chain: a phase-ending target resolves to the entry stage of the
   next pipeline, and one ledger entry describes both facts.
4. Backward moves (lower chain position or rank within an ordered
   pipeline) are held as PendingJustification until a non-empty reason is
   supplied; the applied move is recorded with category alert.
5. Everything else is applied immediately.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from src.workflow.errors import NoOpTransitionError
from src.workflow.stages.models import HistoryCategory, PipelineKind, Stage
from src.workflow.stages.registry import REGISTRY, StageRegistry
from src.workflow.state import ledger
from src.workflow.state.models import (
    HistoryEntry,
    NotificationHint,
    PendingJustification,
    TransitionApplied,
    TransitionOutcome,
    WorkItem,
)


logger = logging.getLogger(__name__)


# Who hears about an item entering a pipeline
PIPELINE_AUDIENCE: Dict[PipelineKind, str] = {
    PipelineKind.SALES: "sales",
    PipelineKind.TECHNICAL: "technician",
    PipelineKind.AFTER_SALE: "sales",
    PipelineKind.WARRANTY: "technician",
    PipelineKind.CARE: "sales",
}

# Stages that warrant a notification without a pipeline switch
STAGE_AUDIENCE: Dict[Tuple[PipelineKind, str], str] = {
    (PipelineKind.EXTENSION, "tech-notified"): "technician",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionEngine:
    """Decides and applies stage transitions for work items.

    Attributes:
        registry: Stage catalog used for lookups and rank comparison.

    Example:
        >>> engine = TransitionEngine()
        >>> item = engine.new_item("ITEM-1", PipelineKind.SALES)
        >>> outcome = engine.attempt_transition(item, "finalize", "sale.anna")
        >>> outcome.item.stage_id
        'plating-room'
    """

    def __init__(
        self,
        registry: Optional[StageRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry or REGISTRY
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    def new_item(self, item_id: str, pipeline: PipelineKind, **fields: Any) -> WorkItem:
        """Create a work item at the entry stage of its pipeline.

        Creation is not a transition and leaves the ledger empty.
        """
        entry = self.registry.entry_stage(pipeline)
        now = self.now()
        return WorkItem(
            id=item_id,
            pipeline=entry.pipeline,
            stage_id=entry.id,
            created_at=now,
            updated_at=now,
            **fields,
        )

    def current_stage(self, item: WorkItem) -> Stage:
        return self.registry.stage(item.pipeline, item.stage_id)

    def is_backward(self, current: Stage, destination: Stage) -> bool:
        """Check whether moving from current to destination is a regression.

        Moves across lifecycle chains are lateral domain switches and never
        count as backward, and neither do moves among the siblings of an
        unordered pipeline.
        """
        chain = self.registry.chain_of(current.pipeline)
        if destination.pipeline not in chain:
            return False
        if (
            destination.pipeline == current.pipeline
            and not self.registry.is_ordered(current.pipeline)
        ):
            return False
        return self.registry.position(destination) < self.registry.position(current)

    def attempt_transition(
        self,
        item: WorkItem,
        target_stage_id: str,
        actor: str,
        reason: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> TransitionOutcome:
        """Attempt to move a work item to a target stage.

        Args:
            item: The work item as last read by the caller.
            target_stage_id: The requested stage.
            actor: Identity of the caller, recorded in the ledger.
            reason: Justification; required for backward moves only.
            attributes: Domain attributes merged into the item when the
                move is applied.

        Returns:
            TransitionApplied carrying the new WorkItem, or
            PendingJustification when a backward move lacks a reason.
            The input item is never modified.

        Raises:
            UnknownStageError: If the target is not reachable from the
                item's pipeline.
            NoOpTransitionError: If the target is the occupied stage.
        """
        current = self.current_stage(item)
        requested = self.registry.locate(item.pipeline, target_stage_id)

        destination = self.registry.auto_chain_target(requested) or requested
        auto_chained = destination is not requested

        if destination == current or requested == current:
            logger.warning(
                "No-op transition rejected",
                extra={"work_item_id": item.id, "stage_id": current.id},
            )
            raise NoOpTransitionError(item.id, current.id)

        if self.is_backward(current, destination):
            justification = (reason or "").strip()
            if not justification:
                logger.info(
                    "Backward move awaiting justification",
                    extra={
                        "work_item_id": item.id,
                        "from_stage": current.id,
                        "to_stage": destination.id,
                        "version": item.version,
                    },
                )
                return PendingJustification(
                    work_item_id=item.id,
                    pipeline=item.pipeline,
                    target_stage_id=destination.id,
                    current_stage_id=current.id,
                    expected_version=item.version,
                )
            return self.commit(
                item,
                destination,
                actor=actor,
                description=(
                    f"moved back: {current.label} → {destination.label}. "
                    f"Reason: {justification}"
                ),
                category=HistoryCategory.ALERT,
                requested_stage_id=target_stage_id,
                backward=True,
                attributes=attributes,
            )

        if auto_chained:
            description = (
                f"{requested.label.upper()} → auto-advanced to "
                f"{destination.label.upper()} ({destination.pipeline.value})"
            )
        else:
            description = f"moved: {current.label} → {destination.label}"

        return self.commit(
            item,
            destination,
            actor=actor,
            description=description,
            category=self.registry.category_of(destination.pipeline),
            requested_stage_id=target_stage_id,
            auto_chained=auto_chained,
            attributes=attributes,
        )

    def commit(
        self,
        item: WorkItem,
        destination: Stage,
        actor: str,
        description: str,
        category: HistoryCategory,
        requested_stage_id: Optional[str] = None,
        auto_chained: bool = False,
        backward: bool = False,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> TransitionApplied:
        """Apply a decided transition: new stage, one ledger entry, new version.

        Used by attempt_transition and by the branch resolver for the
        cross-pipeline switches it decides itself.
        """
        current = self.current_stage(item)
        entry = HistoryEntry(
            timestamp=self.now(),
            actor=actor,
            action_description=description,
            category=category,
            pipeline=destination.pipeline,
            from_stage=current.id,
            to_stage=destination.id,
        )

        update: Dict[str, Any] = {
            "pipeline": destination.pipeline,
            "stage_id": destination.id,
            "archived": destination.terminal,
            "version": item.version + 1,
        }
        if attributes:
            update["attributes"] = {**item.attributes, **attributes}

        moved = ledger.append(item.model_copy(update=update), entry)

        logger.info(
            "Transition applied",
            extra={
                "work_item_id": item.id,
                "from_stage": current.id,
                "to_stage": destination.id,
                "pipeline": destination.pipeline.value,
                "category": category.value,
                "version": moved.version,
            },
        )

        return TransitionApplied(
            item=moved,
            entry=entry,
            requested_stage_id=requested_stage_id or destination.id,
            from_pipeline=current.pipeline,
            from_stage_id=current.id,
            auto_chained=auto_chained,
            backward=backward,
            notification=self._notification_for(current, destination),
        )

    def record(
        self,
        item: WorkItem,
        actor: str,
        description: str,
        category: HistoryCategory,
        attributes: Optional[Dict[str, Any]] = None,
        archive: bool = False,
    ) -> TransitionApplied:
        """Append a ledger entry without moving the item.

        Used for decisions that end a flow in place, such as a rejected
        extension request. With archive=True the item leaves the active
        board although its stage is unchanged.
        """
        entry = HistoryEntry(
            timestamp=self.now(),
            actor=actor,
            action_description=description,
            category=category,
            pipeline=item.pipeline,
            from_stage=item.stage_id,
            to_stage=item.stage_id,
        )
        update: Dict[str, Any] = {"version": item.version + 1}
        if attributes:
            update["attributes"] = {**item.attributes, **attributes}
        if archive:
            update["archived"] = True
        recorded = ledger.append(item.model_copy(update=update), entry)

        logger.info(
            "Decision recorded in place",
            extra={
                "work_item_id": item.id,
                "stage_id": item.stage_id,
                "category": category.value,
                "version": recorded.version,
            },
        )

        return TransitionApplied(
            item=recorded,
            entry=entry,
            requested_stage_id=item.stage_id,
            from_pipeline=item.pipeline,
            from_stage_id=item.stage_id,
        )

    def _notification_for(
        self, current: Stage, destination: Stage
    ) -> Optional[NotificationHint]:
        if destination.pipeline != current.pipeline:
            audience = PIPELINE_AUDIENCE.get(destination.pipeline)
        else:
            audience = STAGE_AUDIENCE.get((destination.pipeline, destination.id))
        if audience is None:
            return None
        return NotificationHint(
            pipeline=destination.pipeline,
            stage_id=destination.id,
            audience=audience,
        )
