"""Error taxonomy for the workflow engine.

All validation errors are surfaced to the immediate caller unmodified.
ConcurrentModificationError is the only condition a caller may retry
automatically, after refetching the work item.

PendingJustification is deliberately absent: a backward move awaiting a
reason is a control outcome, not a failure (see state/models.py).
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine.

    Attributes:
        message: Human-readable description naming the rule that blocked
                 the request.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnknownPipelineError(WorkflowError):
    """Raised when a pipeline kind is not registered.

    Attributes:
        pipeline: The pipeline value that was requested.
    """

    def __init__(self, pipeline: str):
        self.pipeline = pipeline
        super().__init__(f"Unknown pipeline: {pipeline}")


class UnknownStageError(WorkflowError):
    """Raised when a stage id is not registered under a pipeline.

    Attributes:
        pipeline: The pipeline the stage was looked up in.
        stage_id: The stage id that was requested.
    """

    def __init__(self, pipeline: str, stage_id: str):
        self.pipeline = pipeline
        self.stage_id = stage_id
        super().__init__(f"Unknown stage '{stage_id}' for pipeline {pipeline}")


class NoOpTransitionError(WorkflowError):
    """Raised when the requested stage equals the current stage.

    Attributes:
        work_item_id: The work item the request targeted.
        stage_id: The stage the item already occupies.
    """

    def __init__(self, work_item_id: str, stage_id: str):
        self.work_item_id = work_item_id
        self.stage_id = stage_id
        super().__init__(
            f"Work item {work_item_id} is already at stage '{stage_id}'"
        )


class InvalidBranchStateError(WorkflowError):
    """Raised when a branch resolution is requested from the wrong state.

    Attributes:
        work_item_id: The work item the request targeted.
        stage_id: The stage the item currently occupies.
    """

    def __init__(
        self,
        work_item_id: str,
        stage_id: str,
        message: Optional[str] = None,
    ):
        self.work_item_id = work_item_id
        self.stage_id = stage_id
        super().__init__(
            message
            or f"Work item {work_item_id} cannot branch from stage '{stage_id}'"
        )


class InvalidDueDateError(WorkflowError):
    """Raised when an approved extension carries a due date that is not later
    than the original one."""

    def __init__(self, work_item_id: str, message: str):
        self.work_item_id = work_item_id
        super().__init__(message)


class ConcurrentModificationError(WorkflowError):
    """Raised when the work item changed between read and write.

    The caller should refetch the item and retry.

    Attributes:
        work_item_id: The work item with the conflict.
        expected_version: The version the caller based its request on, or
            None when a backward move was confirmed without one.
        actual_version: The version found in the store, if known.
    """

    def __init__(
        self,
        work_item_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int] = None,
    ):
        self.work_item_id = work_item_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if expected_version is None:
            message = (
                f"Backward move of work item {work_item_id} must be confirmed "
                f"with the version it was proposed on"
            )
        else:
            message = (
                f"Version conflict for work item {work_item_id}: "
                f"expected {expected_version}"
            )
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message)


class WorkItemNotFoundError(WorkflowError):
    """Raised when a work item id does not exist in the repository."""

    def __init__(self, work_item_id: str):
        self.work_item_id = work_item_id
        super().__init__(f"Work item not found: {work_item_id}")


class InvalidRequestError(WorkflowError):
    """Raised for malformed input that no other rule covers, such as an
    empty extension reason."""


class DuplicateWorkItemError(WorkflowError):
    """Raised when creating a work item whose id is already taken."""

    def __init__(self, work_item_id: str):
        self.work_item_id = work_item_id
        super().__init__(f"Work item already exists: {work_item_id}")
