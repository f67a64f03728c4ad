"""Board projection and pending views."""

from src.workflow.board.projection import (
    PENDING_STAGES,
    is_pending,
    pending_board,
    pending_items,
    project_board,
)

__all__ = [
    "PENDING_STAGES",
    "is_pending",
    "pending_board",
    "pending_items",
    "project_board",
]
