"""Stage registry.

Ordered stage catalog per pipeline kind, with rank lookup, lifecycle
chains and auto-chain targets. Loaded once at import time.
"""

from src.workflow.stages.models import (
    HistoryCategory,
    PipelineDefinition,
    PipelineKind,
    Stage,
)
from src.workflow.stages.registry import (
    DEFAULT_AUTO_CHAIN,
    DEFAULT_CHAINS,
    DEFAULT_PIPELINES,
    REGISTRY,
    StageRegistry,
    rank_of,
    stages_of,
)

__all__ = [
    # Models
    "HistoryCategory",
    "PipelineDefinition",
    "PipelineKind",
    "Stage",
    # Registry
    "DEFAULT_AUTO_CHAIN",
    "DEFAULT_CHAINS",
    "DEFAULT_PIPELINES",
    "REGISTRY",
    "StageRegistry",
    "rank_of",
    "stages_of",
]
