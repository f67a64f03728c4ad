"""Board projection: read-side grouping of work items by stage.

Nothing here is stored. Boards are recomputed from the live item set on
every read, and the pending view is a predicate over stage ids rather than
a flag on the item.
"""

from typing import Dict, FrozenSet, Iterable, List, Mapping

from src.workflow.stages.models import PipelineKind
from src.workflow.stages.registry import REGISTRY, PipelineRef, StageRegistry
from src.workflow.state.models import WorkItem


# Stages at which an item waits for an operator
PENDING_STAGES: Mapping[PipelineKind, FrozenSet[str]] = {
    PipelineKind.ACCESSORY: frozenset({"need-to-buy"}),
    PipelineKind.PARTNER: frozenset({"ship-to-partner"}),
    PipelineKind.EXTENSION: frozenset({"requested", "sales-contacted"}),
    PipelineKind.LEAD: frozenset({"identify-needs"}),
}


def project_board(
    items: Iterable[WorkItem],
    pipeline: PipelineRef,
    registry: StageRegistry = REGISTRY,
) -> Dict[str, List[WorkItem]]:
    """Group work items by stage id for one pipeline.

    Every registered stage is present as a key, in canonical order, even
    when its column is empty. Items keep the order they were given in.
    Items belonging to other pipelines are ignored.

    Raises:
        UnknownPipelineError: If the pipeline is not registered.
    """
    stages = registry.stages_of(pipeline)
    kind = stages[0].pipeline
    board: Dict[str, List[WorkItem]] = {stage.id: [] for stage in stages}
    for item in items:
        if item.pipeline != kind:
            continue
        column = board.get(item.stage_id)
        if column is not None:
            column.append(item)
    return board


def is_pending(item: WorkItem) -> bool:
    """Whether the item waits for operator action at its current stage."""
    if item.archived:
        return False
    return item.stage_id in PENDING_STAGES.get(item.pipeline, frozenset())


def pending_items(
    items: Iterable[WorkItem],
    pipeline: PipelineRef,
    registry: StageRegistry = REGISTRY,
) -> List[WorkItem]:
    kind = registry.definition(pipeline).kind
    return [item for item in items if item.pipeline == kind and is_pending(item)]


def pending_board(
    items: Iterable[WorkItem],
    pipeline: PipelineRef,
    registry: StageRegistry = REGISTRY,
) -> Dict[str, List[WorkItem]]:
    """Board restricted to pending items; every stage is still a key."""
    return project_board(pending_items(items, pipeline, registry), pipeline, registry)
