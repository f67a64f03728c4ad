"""Branch resolver: outcome-driven pipeline switches and approvals.

At the designated branch points an operator does not pick a target stage;
they report an outcome and the resolver decides where the item goes:

- Customer feedback at after-sale "feedback-request" routes into Care
  (positive) or Warranty (negative).
- Extension approvals walk the extension pipeline one stage per approval;
  a rejection ends the request in place.
- Accessory and partner requests are advanced by an operator "approve"
  action that follows the engine's ordinary forward/backward rules.

Every decision goes through the TransitionEngine so stage, ledger and
version change together.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import TypeAdapter, ValidationError

from src.workflow.errors import (
    InvalidBranchStateError,
    InvalidDueDateError,
    InvalidRequestError,
)
from src.workflow.stages.models import HistoryCategory, PipelineKind
from src.workflow.state.engine import TransitionEngine
from src.workflow.state.models import (
    TransitionApplied,
    TransitionOutcome,
    WorkItem,
    WorkItemKind,
)


logger = logging.getLogger(__name__)


_datetime_adapter = TypeAdapter(datetime)


FEEDBACK_STAGE = "feedback-request"
KPI_STAGE = "kpi-recorded"
REQUEST_PIPELINES = (PipelineKind.ACCESSORY, PipelineKind.PARTNER)


class FeedbackOutcome(str, Enum):
    """Customer feedback collected at the end of after-sale."""

    POSITIVE = "positive"
    NEGATIVE = "negative"


class ExtensionDecision(str, Enum):
    """Decision on a due-date extension request."""

    APPROVED = "approved"
    REJECTED = "rejected"


def _as_instant(value: Any) -> datetime:
    """Coerce a stored datetime or ISO string into an aware datetime."""
    parsed = _datetime_adapter.validate_python(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BranchResolver:
    """Routes work items at branch points.

    Attributes:
        engine: Transition engine used to apply every decision.
    """

    def __init__(self, engine: Optional[TransitionEngine] = None):
        self.engine = engine or TransitionEngine()

    def resolve_feedback(
        self,
        item: WorkItem,
        outcome: FeedbackOutcome,
        actor: str,
    ) -> TransitionApplied:
        """Route an after-sale item into Care or Warranty.

        The switch is lateral and never subject to the backward rule.

        Raises:
            InvalidBranchStateError: If the item is not at after-sale
                "feedback-request".
        """
        outcome = FeedbackOutcome(outcome)
        if item.pipeline != PipelineKind.AFTER_SALE or item.stage_id != FEEDBACK_STAGE:
            logger.warning(
                "Feedback branch rejected",
                extra={"work_item_id": item.id, "stage_id": item.stage_id},
            )
            raise InvalidBranchStateError(
                item.id,
                item.stage_id,
                f"Feedback can only be resolved at '{FEEDBACK_STAGE}', "
                f"work item {item.id} is at '{item.stage_id}'",
            )

        registry = self.engine.registry
        current = self.engine.current_stage(item)

        if outcome == FeedbackOutcome.POSITIVE:
            destination = registry.entry_stage(PipelineKind.CARE)
            category = HistoryCategory.AFTER_SALE
            flow = "care"
        else:
            destination = registry.entry_stage(PipelineKind.WARRANTY)
            category = HistoryCategory.ALERT
            flow = "warranty"

        logger.info(
            "Resolving feedback branch",
            extra={"work_item_id": item.id, "outcome": outcome.value},
        )

        return self.engine.commit(
            item,
            destination,
            actor=actor,
            description=(
                f"feedback {outcome.value}: {current.label} → "
                f"{destination.label} ({destination.pipeline.value})"
            ),
            category=category,
            attributes={"care_warranty_flow": flow},
        )

    def open_extension_request(
        self,
        request_id: str,
        order_id: str,
        reason: str,
        actor: str,
        due_at: Optional[datetime] = None,
    ) -> WorkItem:
        """Create an extension request at the entry of its pipeline.

        Raises:
            InvalidRequestError: If the reason is empty.
        """
        reason = (reason or "").strip()
        if not reason:
            raise InvalidRequestError("An extension request requires a reason")

        attributes: Dict[str, Any] = {
            "order_id": order_id,
            "reason": reason,
            "requested_by": actor,
        }
        if due_at is not None:
            attributes["due_at"] = due_at

        return self.engine.new_item(
            request_id,
            PipelineKind.EXTENSION,
            kind=WorkItemKind.EXTENSION_REQUEST,
            attributes=attributes,
        )

    def resolve_extension_approval(
        self,
        request: WorkItem,
        decision: ExtensionDecision,
        actor: str,
        new_due_at: Optional[datetime] = None,
        valid_reason: Optional[bool] = None,
        customer_contact_result: Optional[str] = None,
    ) -> TransitionApplied:
        """Advance or reject an extension request.

        An approval moves the request one stage forward. A new due date,
        when given, must be later than the request's original due date
        (or than now when the request carries none) and is stored as
        new_due_at; due_at keeps the original. Reaching "kpi-recorded"
        without a recorded valid reason flags the lateness for KPI. A
        rejection is recorded in place and closes the request.

        Raises:
            InvalidBranchStateError: If the item is not an open extension
                request.
            InvalidDueDateError: If new_due_at is not in the future
                relative to the original due date.
        """
        decision = ExtensionDecision(decision)
        self._require_open_extension(request)

        current = self.engine.current_stage(request)
        updates: Dict[str, Any] = {}
        if valid_reason is not None:
            updates["valid_reason"] = valid_reason
        if customer_contact_result:
            updates["customer_result"] = customer_contact_result

        if decision == ExtensionDecision.REJECTED:
            updates["decision"] = ExtensionDecision.REJECTED.value
            logger.info(
                "Extension request rejected",
                extra={"work_item_id": request.id, "stage_id": current.id},
            )
            return self.engine.record(
                request,
                actor=actor,
                description=f"extension rejected at {current.label}",
                category=HistoryCategory.ALERT,
                attributes=updates,
                archive=True,
            )

        stages = self.engine.registry.stages_of(request.pipeline)
        destination = stages[current.rank + 1]
        description = f"extension approved: {current.label} → {destination.label}"

        if new_due_at is not None:
            new_due_at = self._validate_due_date(request, new_due_at)
            updates["new_due_at"] = new_due_at
            updates["approved_by"] = actor
            updates["approved_at"] = self.engine.now()
            description += f". New due date: {new_due_at.isoformat()}"

        if destination.id == KPI_STAGE:
            updates["decision"] = ExtensionDecision.APPROVED.value
            reason_ok = updates.get("valid_reason", request.attributes.get("valid_reason"))
            if reason_ok is not True:
                updates["kpi_late_recorded"] = True
                description += ". Late without valid reason, recorded for KPI"

        return self.engine.commit(
            request,
            destination,
            actor=actor,
            description=description,
            category=HistoryCategory.INFO,
            attributes=updates,
        )

    def resolve_request_approval(
        self,
        request: WorkItem,
        target_stage_id: str,
        actor: str,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionOutcome:
        """Move an accessory or partner request on operator approval.

        Behaves like a drag-drop transition restricted to the request's own
        pipeline. Notes are stored on the item; a backward move still needs
        its own reason and returns PendingJustification without one.

        Raises:
            InvalidBranchStateError: If the item is not an accessory or
                partner request.
            UnknownStageError: If the target is not a stage of its pipeline.
            NoOpTransitionError: If the target is the occupied stage.
        """
        if request.pipeline not in REQUEST_PIPELINES:
            raise InvalidBranchStateError(
                request.id,
                request.stage_id,
                f"Approval applies to accessory and partner requests, "
                f"work item {request.id} is in {request.pipeline.value}",
            )

        attributes = {"notes": notes.strip()} if notes and notes.strip() else None
        return self.engine.attempt_transition(
            request,
            target_stage_id,
            actor,
            reason=reason,
            attributes=attributes,
        )

    def _require_open_extension(self, request: WorkItem) -> None:
        if request.pipeline != PipelineKind.EXTENSION:
            raise InvalidBranchStateError(
                request.id,
                request.stage_id,
                f"Work item {request.id} is not an extension request",
            )
        if request.attributes.get("decision") == ExtensionDecision.REJECTED.value:
            raise InvalidBranchStateError(
                request.id,
                request.stage_id,
                f"Extension request {request.id} was already rejected",
            )
        if self.engine.current_stage(request).terminal:
            raise InvalidBranchStateError(
                request.id,
                request.stage_id,
                f"Extension request {request.id} is already fully approved",
            )

    def _validate_due_date(self, request: WorkItem, new_due_at: datetime) -> datetime:
        new_due_at = _as_instant(new_due_at)
        original = request.attributes.get("due_at")
        try:
            baseline = _as_instant(original) if original is not None else self.engine.now()
        except ValidationError as e:
            raise InvalidDueDateError(
                request.id, f"Stored due date is not a valid instant: {original!r}"
            ) from e

        if new_due_at <= baseline:
            logger.warning(
                "Extension due date rejected",
                extra={
                    "work_item_id": request.id,
                    "new_due_at": new_due_at.isoformat(),
                    "baseline": baseline.isoformat(),
                },
            )
            raise InvalidDueDateError(
                request.id,
                f"New due date {new_due_at.isoformat()} must be later than "
                f"{baseline.isoformat()}",
            )
        return new_due_at
