"""Request and response models for the workflow HTTP API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.workflow.branching.resolver import ExtensionDecision, FeedbackOutcome
from src.workflow.stages.models import HistoryCategory, PipelineKind
from src.workflow.state.models import WorkItem, WorkItemKind


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


class ReadyResponse(BaseModel):
    """Readiness check response."""

    status: str
    dependencies: Dict[str, str]


class PipelineSummary(BaseModel):
    kind: PipelineKind
    label: str
    ordered: bool
    category: HistoryCategory
    entry_stage: str
    stage_count: int


class BoardResponse(BaseModel):
    """Stage columns of one pipeline, in canonical stage order."""

    pipeline: PipelineKind
    pending_only: bool = False
    columns: Dict[str, List[WorkItem]]


class CreateWorkItemRequest(BaseModel):
    id: str = Field(..., min_length=1)
    pipeline: PipelineKind
    kind: WorkItemKind = WorkItemKind.ORDER_ITEM
    attributes: Dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    """A requested stage change.

    Attributes:
        target_stage_id: Stage the caller wants the item in.
        reason: Justification, required to confirm a backward move.
        expected_version: Version the caller last read. When given, the
            request fails with 409 if the item changed since. Required
            to confirm a backward move.
    """

    target_stage_id: str = Field(..., min_length=1)
    reason: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class FeedbackRequest(BaseModel):
    outcome: FeedbackOutcome
    expected_version: Optional[int] = Field(default=None, ge=1)


class ExtensionDecisionRequest(BaseModel):
    decision: ExtensionDecision
    new_due_at: Optional[datetime] = None
    valid_reason: Optional[bool] = None
    customer_contact_result: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class RequestApprovalRequest(BaseModel):
    target_stage_id: str = Field(..., min_length=1)
    notes: Optional[str] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class ExtensionRequestCreate(BaseModel):
    reason: str
    due_at: Optional[datetime] = None
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body returned for rejected requests."""

    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
