"""Workflow service: the application layer around the transition engine.

Every mutating call follows the same sequence:

    load -> optional expected_version check -> engine/resolver decision
         -> update_with_version -> emit events -> return outcome

The engine and resolver are pure, so a failed write leaves nothing to undo.
A version mismatch at either end raises ConcurrentModificationError and
the caller is expected to refetch and retry.

Source:
- src/workflow/state/engine.py (TransitionEngine)
- src/workflow/branching/resolver.py (BranchResolver)
- src/workflow/state/repository.py (WorkItemRepository)
- src/workflow/events/emitter.py (EventEmitter)
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from src.workflow.board.projection import pending_board, project_board
from src.workflow.branching.resolver import (
    BranchResolver,
    ExtensionDecision,
    FeedbackOutcome,
)
from src.workflow.errors import (
    ConcurrentModificationError,
    DuplicateWorkItemError,
    WorkflowError,
    WorkItemNotFoundError,
)
from src.workflow.events.emitter import EventEmitter, NullEventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.stages.registry import PipelineRef
from src.workflow.state import ledger
from src.workflow.state.engine import TransitionEngine
from src.workflow.state.models import (
    PendingJustification,
    TransitionApplied,
    TransitionOutcome,
    WorkItem,
    WorkItemKind,
)
from src.workflow.state.repository import WorkItemRepository


logger = logging.getLogger(__name__)


class WorkflowService:
    """Loads, decides, persists and reports work item changes.

    Attributes:
        repository: Persistence collaborator.
        engine: Transition engine.
        resolver: Branch resolver sharing the engine.
        event_emitter: Sink for workflow events.

    Example:
        >>> service = WorkflowService(InMemoryWorkItemRepository())
        >>> await service.create_work_item("ITEM-1", "sales")
        >>> outcome = await service.transition("ITEM-1", "finalize", "sale.anna")
        >>> outcome.item.stage_id
        'plating-room'
    """

    def __init__(
        self,
        repository: WorkItemRepository,
        engine: Optional[TransitionEngine] = None,
        resolver: Optional[BranchResolver] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.repository = repository
        self.engine = engine or TransitionEngine()
        self.resolver = resolver or BranchResolver(self.engine)
        self.event_emitter = event_emitter or NullEventEmitter()

    @property
    def registry(self):
        return self.engine.registry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_work_item(self, item_id: str) -> WorkItem:
        """Load a work item.

        Raises:
            WorkItemNotFoundError: If no item has this id.
        """
        item = await self.repository.get(item_id)
        if item is None:
            raise WorkItemNotFoundError(item_id)
        return item

    async def history(self, item_id: str) -> ledger.HistoryView:
        """Return the item's ledger, newest first."""
        return ledger.all_of(await self.get_work_item(item_id))

    async def board(
        self,
        pipeline: PipelineRef,
        pending: bool = False,
    ) -> Dict[str, List[WorkItem]]:
        """Project the current items of a pipeline onto its stages.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
        """
        kind = self.registry.definition(pipeline).kind
        items = await self.repository.list_by_pipeline(kind)
        if pending:
            return pending_board(items, kind, self.registry)
        return project_board(items, kind, self.registry)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_work_item(
        self,
        item_id: str,
        pipeline: PipelineRef,
        kind: WorkItemKind = WorkItemKind.ORDER_ITEM,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> WorkItem:
        """Create a work item at the entry stage of its pipeline.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
            DuplicateWorkItemError: If the id is already taken.
        """
        kind_of_pipeline = self.registry.definition(pipeline).kind
        async with self._reporting(item_id, kind_of_pipeline.value):
            if await self.repository.get(item_id) is not None:
                raise DuplicateWorkItemError(item_id)
            item = self.engine.new_item(
                item_id,
                kind_of_pipeline,
                kind=kind,
                attributes=dict(attributes or {}),
            )
            await self.repository.save(item)

        logger.info(
            "Work item created",
            extra={
                "work_item_id": item.id,
                "pipeline": item.pipeline.value,
                "stage_id": item.stage_id,
            },
        )
        await self._emit_created(item)
        return item

    async def open_extension_request(
        self,
        order_id: str,
        reason: str,
        actor: str,
        due_at: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> WorkItem:
        """Open a due-date extension request for an order.

        When due_at is omitted and the order is tracked, the order's own
        due_at becomes the request's original due date.

        Raises:
            InvalidRequestError: If the reason is empty.
            DuplicateWorkItemError: If request_id is already taken.
        """
        request_id = request_id or f"{order_id}-ext-{uuid.uuid4().hex[:8]}"
        async with self._reporting(request_id, "extension"):
            if due_at is None:
                order = await self.repository.get(order_id)
                if order is not None:
                    due_at = order.attributes.get("due_at")

            request = self.resolver.open_extension_request(
                request_id, order_id, reason, actor, due_at=due_at
            )
            if await self.repository.get(request.id) is not None:
                raise DuplicateWorkItemError(request.id)
            await self.repository.save(request)

        logger.info(
            "Extension request opened",
            extra={"work_item_id": request.id, "order_id": order_id},
        )
        await self._emit_created(request)
        return request

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        item_id: str,
        target_stage_id: str,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionOutcome:
        """Attempt a stage change on a stored work item.

        A backward move is confirmed by repeating the request with a reason
        and the expected_version returned in the PendingJustification.

        Returns:
            TransitionApplied, or PendingJustification for a backward move
            without a reason (nothing is written in that case).

        Raises:
            WorkItemNotFoundError, UnknownStageError, NoOpTransitionError,
            ConcurrentModificationError
        """
        async with self._reporting(item_id):
            item = await self._load(item_id, expected_version)
            outcome = self.engine.attempt_transition(
                item, target_stage_id, actor, reason=reason
            )
            if isinstance(outcome, TransitionApplied):
                await self._require_confirmed_version(item, outcome, expected_version)
                await self._persist(item, outcome)

        await self._emit_outcome(outcome, EventType.STAGE_TRANSITION, actor)
        return outcome

    async def resolve_feedback(
        self,
        item_id: str,
        outcome: FeedbackOutcome,
        actor: str,
        expected_version: Optional[int] = None,
    ) -> TransitionApplied:
        async with self._reporting(item_id):
            item = await self._load(item_id, expected_version)
            applied = self.resolver.resolve_feedback(item, outcome, actor)
            await self._persist(item, applied)

        await self._emit_outcome(applied, EventType.BRANCH, actor)
        return applied

    async def resolve_extension_approval(
        self,
        item_id: str,
        decision: ExtensionDecision,
        actor: str,
        new_due_at: Optional[datetime] = None,
        valid_reason: Optional[bool] = None,
        customer_contact_result: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionApplied:
        async with self._reporting(item_id):
            item = await self._load(item_id, expected_version)
            applied = self.resolver.resolve_extension_approval(
                item,
                decision,
                actor,
                new_due_at=new_due_at,
                valid_reason=valid_reason,
                customer_contact_result=customer_contact_result,
            )
            await self._persist(item, applied)

        await self._emit_outcome(applied, EventType.BRANCH, actor)
        return applied

    async def resolve_request_approval(
        self,
        item_id: str,
        target_stage_id: str,
        actor: str,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionOutcome:
        async with self._reporting(item_id):
            item = await self._load(item_id, expected_version)
            outcome = self.resolver.resolve_request_approval(
                item, target_stage_id, actor, notes=notes, reason=reason
            )
            if isinstance(outcome, TransitionApplied):
                await self._require_confirmed_version(item, outcome, expected_version)
                await self._persist(item, outcome)

        await self._emit_outcome(outcome, EventType.BRANCH, actor)
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, item_id: str, expected_version: Optional[int]) -> WorkItem:
        item = await self.get_work_item(item_id)
        if expected_version is not None and expected_version != item.version:
            logger.warning(
                "Stale work item version",
                extra={
                    "work_item_id": item_id,
                    "expected_version": expected_version,
                    "actual_version": item.version,
                },
            )
            await self._emit_conflict(item, expected_version, item.version)
            raise ConcurrentModificationError(
                item_id, expected_version, item.version
            )
        return item

    async def _require_confirmed_version(
        self,
        item: WorkItem,
        outcome: TransitionApplied,
        expected_version: Optional[int],
    ) -> None:
        """Reject a backward move confirmed without the version it was proposed on.

        A stale expected_version is already rejected by _load.
        """
        if not outcome.backward or expected_version is not None:
            return
        logger.warning(
            "Backward move confirmed without a version",
            extra={
                "work_item_id": item.id,
                "from_stage": item.stage_id,
                "to_stage": outcome.item.stage_id,
                "actual_version": item.version,
            },
        )
        await self._emit_conflict(item, None, item.version)
        raise ConcurrentModificationError(item.id, None, item.version)

    async def _persist(self, before: WorkItem, applied: TransitionApplied) -> None:
        if await self.repository.update_with_version(applied.item):
            return

        current = await self.repository.get(before.id)
        actual = current.version if current is not None else None
        logger.warning(
            "Work item changed during transition",
            extra={
                "work_item_id": before.id,
                "expected_version": before.version,
                "actual_version": actual,
            },
        )
        await self._emit_conflict(before, before.version, actual)
        raise ConcurrentModificationError(before.id, before.version, actual)

    @asynccontextmanager
    async def _reporting(
        self, item_id: str, pipeline: str = "unknown"
    ) -> AsyncIterator[None]:
        """Emit an ERROR event for rule violations, then re-raise.

        Conflicts are reported by the code that detects them.
        """
        try:
            yield
        except ConcurrentModificationError:
            raise
        except WorkflowError as e:
            logger.warning(
                "Workflow request rejected",
                extra={
                    "work_item_id": item_id,
                    "error_type": type(e).__name__,
                    "error": e.message,
                },
            )
            await self._safe_emit(
                WorkflowEvent(
                    event_type=EventType.ERROR,
                    work_item_id=item_id,
                    pipeline=pipeline,
                    details={
                        "error_type": type(e).__name__,
                        "error_message": e.message,
                    },
                )
            )
            raise

    async def _emit_created(self, item: WorkItem) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.STAGE_TRANSITION,
                work_item_id=item.id,
                pipeline=item.pipeline.value,
                details={"from_stage": None, "to_stage": item.stage_id},
            )
        )

    async def _emit_outcome(
        self,
        outcome: TransitionOutcome,
        applied_type: EventType,
        actor: str,
    ) -> None:
        if isinstance(outcome, PendingJustification):
            await self._safe_emit(
                WorkflowEvent(
                    event_type=EventType.JUSTIFICATION_REQUIRED,
                    work_item_id=outcome.work_item_id,
                    pipeline=outcome.pipeline.value,
                    details={
                        "current_stage": outcome.current_stage_id,
                        "target_stage": outcome.target_stage_id,
                        "expected_version": outcome.expected_version,
                    },
                )
            )
            return

        await self._safe_emit(
            WorkflowEvent(
                event_type=applied_type,
                work_item_id=outcome.item.id,
                pipeline=outcome.item.pipeline.value,
                timestamp=outcome.entry.timestamp,
                details={
                    "from_pipeline": outcome.from_pipeline.value,
                    "from_stage": outcome.from_stage_id,
                    "to_stage": outcome.item.stage_id,
                    "category": outcome.entry.category.value,
                    "actor": actor,
                    "auto_chained": outcome.auto_chained,
                    "backward": outcome.backward,
                },
            )
        )

    async def _emit_conflict(
        self,
        item: WorkItem,
        expected_version: Optional[int],
        actual_version: Optional[int],
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.CONFLICT,
                work_item_id=item.id,
                pipeline=item.pipeline.value,
                details={
                    "expected_version": expected_version,
                    "actual_version": actual_version,
                },
            )
        )

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event without letting a sink failure undo a persisted change."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "work_item_id": event.work_item_id,
                },
            )
