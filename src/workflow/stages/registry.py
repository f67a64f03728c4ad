"""Stage registry: the single source of truth for stage ids, labels and ranks.

The registry is immutable process-wide configuration, built once at import
time. It also carries the two cross-pipeline rules that depend only on the
catalog:

- Lifecycle chains: pipelines an order line-item traverses in sequence.
  Backward detection compares (chain position, rank), so a technical item
  dragged back to a sales stage counts as a backward move.
- Auto-chain targets: phase-ending stages that redirect into the entry
  stage of the next pipeline.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from src.workflow.errors import UnknownPipelineError, UnknownStageError
from src.workflow.stages.models import (
    HistoryCategory,
    PipelineDefinition,
    PipelineKind,
    Stage,
)


PipelineRef = Union[PipelineKind, str]


def _pipeline(
    kind: PipelineKind,
    label: str,
    stages: Sequence[Tuple[str, str]],
    category: HistoryCategory = HistoryCategory.INFO,
    terminal: Iterable[str] = (),
    ordered: bool = True,
) -> PipelineDefinition:
    terminal_ids = set(terminal)
    return PipelineDefinition(
        kind=kind,
        label=label,
        ordered=ordered,
        category=category,
        stages=tuple(
            Stage(
                id=stage_id,
                label=stage_label,
                pipeline=kind,
                rank=rank,
                terminal=stage_id in terminal_ids,
            )
            for rank, (stage_id, stage_label) in enumerate(stages)
        ),
    )


DEFAULT_PIPELINES: Tuple[PipelineDefinition, ...] = (
    _pipeline(
        PipelineKind.SALES,
        "Sales",
        [
            ("receive-item", "Receive item"),
            ("tag", "Tag"),
            ("discuss-with-tech", "Discuss with tech"),
            ("approval", "Approval"),
            ("finalize", "Finalized"),
        ],
        category=HistoryCategory.SALES,
    ),
    _pipeline(
        PipelineKind.TECHNICAL,
        "Technical",
        [
            ("plating-room", "Plating room"),
            ("bonding-room", "Bonding room"),
            ("leather-room", "Leather room"),
            ("technical-done", "Technical done"),
        ],
        category=HistoryCategory.TECH,
    ),
    _pipeline(
        PipelineKind.AFTER_SALE,
        "After-sale",
        [
            ("debt-and-photo-check", "Debt & photo check"),
            ("delivery", "Delivery"),
            ("feedback-request", "Feedback request"),
            ("archive", "Archive"),
        ],
        category=HistoryCategory.AFTER_SALE,
        terminal=["archive"],
    ),
    _pipeline(
        PipelineKind.WARRANTY,
        "Warranty",
        [
            ("intake", "Warranty intake"),
            ("processing", "Warranty processing"),
            ("complete", "Warranty complete"),
        ],
        terminal=["complete"],
    ),
    _pipeline(
        PipelineKind.CARE,
        "Care",
        [
            ("milestone-6-months", "6-month milestone"),
            ("milestone-12-months", "12-month milestone"),
            ("custom-schedule", "Custom schedule"),
        ],
        terminal=["custom-schedule"],
        ordered=False,
    ),
    _pipeline(
        PipelineKind.ACCESSORY,
        "Accessory procurement",
        [
            ("need-to-buy", "Need to buy"),
            ("bought", "Bought"),
            ("awaiting-ship", "Awaiting shipment"),
            ("shipped", "Shipped"),
            ("delivered-to-technician", "Delivered to technician"),
        ],
        terminal=["delivered-to-technician"],
    ),
    _pipeline(
        PipelineKind.PARTNER,
        "Partner handoff",
        [
            ("ship-to-partner", "Ship to partner"),
            ("partner-processing", "Partner processing"),
            ("ship-back", "Ship back"),
            ("done", "Done"),
        ],
        terminal=["done"],
    ),
    _pipeline(
        PipelineKind.EXTENSION,
        "Extension approval",
        [
            ("requested", "Requested"),
            ("sales-contacted", "Sales contacted"),
            ("manager-approved", "Manager approved"),
            ("tech-notified", "Technician notified"),
            ("kpi-recorded", "KPI recorded"),
        ],
        terminal=["kpi-recorded"],
    ),
    _pipeline(
        PipelineKind.LEAD,
        "Leads",
        [
            ("identify-needs", "Identify needs"),
            ("photo-appointment", "Photo appointment"),
            ("price-negotiation", "Price negotiation"),
            ("visit-or-ship", "Visit or ship"),
            ("closed-won", "Closed won"),
            ("lost", "Lost"),
        ],
        category=HistoryCategory.SALES,
        terminal=["closed-won", "lost"],
    ),
)

# Sales, technical and after-sale are one continuous journey for an
# order line-item; a target stage may be named from any of them.
DEFAULT_CHAINS: Tuple[Tuple[PipelineKind, ...], ...] = (
    (PipelineKind.SALES, PipelineKind.TECHNICAL, PipelineKind.AFTER_SALE),
)

DEFAULT_AUTO_CHAIN: Dict[Tuple[PipelineKind, str], Tuple[PipelineKind, str]] = {
    (PipelineKind.SALES, "finalize"): (PipelineKind.TECHNICAL, "plating-room"),
    (PipelineKind.TECHNICAL, "technical-done"): (
        PipelineKind.AFTER_SALE,
        "debt-and-photo-check",
    ),
}


class StageRegistry:
    """Ordered stage catalog per pipeline.

    Attributes:
        definitions: Pipeline definitions keyed by kind.

    Example:
        >>> registry = StageRegistry.default()
        >>> [s.id for s in registry.stages_of("partner")]
        ['ship-to-partner', 'partner-processing', 'ship-back', 'done']
        >>> registry.rank_of(PipelineKind.SALES, "approval")
        3
    """

    def __init__(
        self,
        definitions: Iterable[PipelineDefinition],
        chains: Iterable[Sequence[PipelineKind]] = (),
        auto_chain: Optional[
            Mapping[Tuple[PipelineKind, str], Tuple[PipelineKind, str]]
        ] = None,
    ):
        self._definitions: Dict[PipelineKind, PipelineDefinition] = {
            d.kind: d for d in definitions
        }

        self._chains: Dict[PipelineKind, Tuple[PipelineKind, ...]] = {}
        for chain in chains:
            members = tuple(chain)
            for kind in members:
                self.definition(kind)
                if kind in self._chains:
                    raise ValueError(f"{kind.value} belongs to two chains")
                self._chains[kind] = members

        self._auto_chain: Dict[Tuple[PipelineKind, str], Stage] = {}
        for (source_kind, source_id), (dest_kind, dest_id) in (
            auto_chain or {}
        ).items():
            self.stage(source_kind, source_id)
            self._auto_chain[(source_kind, source_id)] = self.stage(
                dest_kind, dest_id
            )

    @classmethod
    def default(cls) -> "StageRegistry":
        """Build the registry for the shop's known pipelines."""
        return cls(DEFAULT_PIPELINES, DEFAULT_CHAINS, DEFAULT_AUTO_CHAIN)

    @property
    def pipelines(self) -> List[PipelineKind]:
        return list(self._definitions)

    def definition(self, pipeline: PipelineRef) -> PipelineDefinition:
        """Return the definition of a pipeline.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
        """
        try:
            kind = PipelineKind(pipeline)
        except ValueError:
            raise UnknownPipelineError(str(pipeline)) from None
        definition = self._definitions.get(kind)
        if definition is None:
            raise UnknownPipelineError(kind.value)
        return definition

    def stages_of(self, pipeline: PipelineRef) -> List[Stage]:
        """Return the stages of a pipeline in canonical (rank) order.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
        """
        return list(self.definition(pipeline).stages)

    def stage(self, pipeline: PipelineRef, stage_id: str) -> Stage:
        """Look up one stage of a pipeline.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
            UnknownStageError: If the stage is not registered under it.
        """
        definition = self.definition(pipeline)
        stage = definition.find(stage_id)
        if stage is None:
            raise UnknownStageError(definition.kind.value, stage_id)
        return stage

    def rank_of(self, pipeline: PipelineRef, stage_id: str) -> int:
        """Return the pipeline-local rank of a stage.

        Raises:
            UnknownPipelineError: If the pipeline is not registered.
            UnknownStageError: If the stage is not registered under it.
        """
        return self.stage(pipeline, stage_id).rank

    def entry_stage(self, pipeline: PipelineRef) -> Stage:
        return self.definition(pipeline).entry

    def is_ordered(self, pipeline: PipelineRef) -> bool:
        return self.definition(pipeline).ordered

    def category_of(self, pipeline: PipelineRef) -> HistoryCategory:
        return self.definition(pipeline).category

    def chain_of(self, pipeline: PipelineRef) -> Tuple[PipelineKind, ...]:
        """Return the lifecycle chain containing a pipeline.

        A pipeline outside every chain forms a chain of its own.
        """
        kind = self.definition(pipeline).kind
        return self._chains.get(kind, (kind,))

    def chain_position(self, pipeline: PipelineRef) -> int:
        kind = self.definition(pipeline).kind
        return self.chain_of(kind).index(kind)

    def locate(self, pipeline: PipelineRef, stage_id: str) -> Stage:
        """Resolve a stage id reachable from a pipeline.

        The pipeline's own stages are searched first, then the other
        pipelines of its lifecycle chain in chain order.

        Raises:
            UnknownStageError: If no pipeline of the chain registers the id.
        """
        kind = self.definition(pipeline).kind
        own = self._definitions[kind].find(stage_id)
        if own is not None:
            return own
        for member in self.chain_of(kind):
            found = self._definitions[member].find(stage_id)
            if found is not None:
                return found
        raise UnknownStageError(kind.value, stage_id)

    def auto_chain_target(self, stage: Stage) -> Optional[Stage]:
        """Return the stage a phase-ending stage redirects into, if any."""
        return self._auto_chain.get((stage.pipeline, stage.id))

    def position(self, stage: Stage) -> Tuple[int, int]:
        """Sort key of a stage within its lifecycle chain."""
        return (self.chain_position(stage.pipeline), stage.rank)


REGISTRY = StageRegistry.default()


def stages_of(pipeline: PipelineRef) -> List[Stage]:
    """Return the stages of a pipeline from the default registry."""
    return REGISTRY.stages_of(pipeline)


def rank_of(pipeline: PipelineRef, stage_id: str) -> int:
    """Return a stage's rank from the default registry."""
    return REGISTRY.rank_of(pipeline, stage_id)
