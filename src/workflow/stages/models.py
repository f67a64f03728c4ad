"""Stage registry models.

This module defines the data models for the stage catalog:
- PipelineKind: Enum of all pipelines a work item can travel through
- HistoryCategory: Enum of ledger entry categories
- Stage: One named step within a pipeline
- PipelineDefinition: The ordered stage sequence of one pipeline

Stage ranks are dense and pipeline-local. They are used only to tell
forward moves from backward ones and carry no global priority.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PipelineKind(str, Enum):
    """Pipelines of the order lifecycle.

    Stage Flow (order line-item):
        sales → technical → after_sale → (care | warranty)

    Request pipelines (accessory, partner, extension) and the lead
    pipeline stand alone.

    Attributes:
        SALES: Receiving and tagging the customer's item up to finalization.
        TECHNICAL: Workshop rooms the item passes through.
        AFTER_SALE: Debt check, delivery and feedback collection.
        WARRANTY: Rework after negative feedback.
        CARE: Follow-up milestones after positive feedback.
        ACCESSORY: Procurement of accessories for a technician.
        PARTNER: Handoff of an item to an external partner.
        EXTENSION: Approval of a due-date extension request.
        LEAD: Sales lead qualification kanban.
    """

    SALES = "sales"
    TECHNICAL = "technical"
    AFTER_SALE = "after_sale"
    WARRANTY = "warranty"
    CARE = "care"
    ACCESSORY = "accessory"
    PARTNER = "partner"
    EXTENSION = "extension"
    LEAD = "lead"


class HistoryCategory(str, Enum):
    """Category of a history ledger entry, used for display colouring."""

    SALES = "sales"
    TECH = "tech"
    AFTER_SALE = "after_sale"
    ALERT = "alert"
    INFO = "info"


class Stage(BaseModel):
    """One named step within a pipeline.

    Attributes:
        id: Stage identifier, unique within its pipeline.
        label: Display label.
        pipeline: The pipeline this stage belongs to.
        rank: Dense 0-based position within the pipeline.
        terminal: Whether reaching this stage archives the work item.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    pipeline: PipelineKind
    rank: int = Field(..., ge=0)
    terminal: bool = False


class PipelineDefinition(BaseModel):
    """The canonical stage sequence of one pipeline.

    Attributes:
        kind: The pipeline this definition describes.
        label: Display label of the pipeline.
        stages: Stages in canonical order, ranks strictly increasing.
        ordered: False when the stages are siblings with no forward or
                 backward relation between them (the care milestones).
        category: Ledger category for forward moves into this pipeline.
    """

    model_config = ConfigDict(frozen=True)

    kind: PipelineKind
    label: str
    stages: Tuple[Stage, ...] = Field(..., min_length=1)
    ordered: bool = True
    category: HistoryCategory = HistoryCategory.INFO

    @model_validator(mode="after")
    def _check_sequence(self) -> "PipelineDefinition":
        seen: Dict[str, int] = {}
        previous: Optional[int] = None
        for stage in self.stages:
            if stage.pipeline != self.kind:
                raise ValueError(
                    f"stage '{stage.id}' belongs to {stage.pipeline.value}, "
                    f"not {self.kind.value}"
                )
            if stage.id in seen:
                raise ValueError(f"duplicate stage id '{stage.id}'")
            if previous is not None and stage.rank <= previous:
                raise ValueError(
                    f"ranks must be strictly increasing in {self.kind.value}"
                )
            seen[stage.id] = stage.rank
            previous = stage.rank
        return self

    @property
    def entry(self) -> Stage:
        """The stage new work items enter (rank 0)."""
        return self.stages[0]

    def find(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None
