"""Approval and branch resolution for work items at pipeline exit points."""

from src.workflow.branching.resolver import (
    BranchResolver,
    ExtensionDecision,
    FeedbackOutcome,
)

__all__ = [
    "BranchResolver",
    "ExtensionDecision",
    "FeedbackOutcome",
]
