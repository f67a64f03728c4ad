"""Work items, their history ledger and the transition engine.

State is persisted through a WorkItemRepository with optimistic locking,
so a stage change and its ledger entry are committed together or not at
all. The application-level WorkflowService lives in
src.workflow.state.service.
"""

from src.workflow.state.models import (
    HistoryEntry,
    NotificationHint,
    PendingJustification,
    TransitionApplied,
    TransitionOutcome,
    WorkItem,
    WorkItemKind,
)
from src.workflow.state.ledger import HistoryView, all_of, append
from src.workflow.state.engine import TransitionEngine
from src.workflow.state.repository import (
    DatabaseError,
    InMemoryWorkItemRepository,
    PostgresWorkItemRepository,
    WorkItemRepository,
)

__all__ = [
    # Models
    "HistoryEntry",
    "NotificationHint",
    "PendingJustification",
    "TransitionApplied",
    "TransitionOutcome",
    "WorkItem",
    "WorkItemKind",
    # Ledger
    "HistoryView",
    "all_of",
    "append",
    # Engine
    "TransitionEngine",
    # Repository
    "DatabaseError",
    "InMemoryWorkItemRepository",
    "PostgresWorkItemRepository",
    "WorkItemRepository",
]
