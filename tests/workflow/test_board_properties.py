"""Property-based tests for the board projection and pending views."""

from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from src.workflow.board import is_pending, pending_board, pending_items, project_board
from src.workflow.errors import UnknownPipelineError
from src.workflow.stages import REGISTRY, PipelineKind
from src.workflow.state import WorkItem


@st.composite
def work_items(draw: st.DrawFn, pipelines=tuple(PipelineKind)) -> List[WorkItem]:
    count = draw(st.integers(min_value=0, max_value=25))
    items = []
    for index in range(count):
        pipeline = draw(st.sampled_from(list(pipelines)))
        stage = draw(st.sampled_from(REGISTRY.stages_of(pipeline)))
        items.append(
            WorkItem(
                id=f"ITEM-{index}",
                pipeline=pipeline,
                stage_id=stage.id,
                archived=draw(st.booleans()) if stage.terminal else False,
            )
        )
    return items


class TestProjectionCompleteness:
    """Every registered stage is a key, even with no items."""

    @given(pipeline=st.sampled_from(list(PipelineKind)), items=work_items())
    @settings(max_examples=100)
    def test_every_stage_is_a_key(self, pipeline: PipelineKind, items) -> None:
        board = project_board(items, pipeline)

        assert list(board) == [stage.id for stage in REGISTRY.stages_of(pipeline)]

    @given(pipeline=st.sampled_from(list(PipelineKind)))
    @settings(max_examples=100)
    def test_empty_collection(self, pipeline: PipelineKind) -> None:
        board = project_board([], pipeline)

        assert board
        assert all(column == [] for column in board.values())


class TestProjectionGrouping:
    """Items land in their stage's column, in input order, exactly once."""

    @given(pipeline=st.sampled_from(list(PipelineKind)), items=work_items())
    @settings(max_examples=100)
    def test_grouping_preserves_order(self, pipeline: PipelineKind, items) -> None:
        board = project_board(items, pipeline)

        own = [item for item in items if item.pipeline == pipeline]
        assert sum(len(column) for column in board.values()) == len(own)
        for stage_id, column in board.items():
            assert column == [item for item in own if item.stage_id == stage_id]

    @given(items=work_items())
    @settings(max_examples=100)
    def test_projection_does_not_modify_items(self, items) -> None:
        snapshot = [item.model_dump() for item in items]
        project_board(items, PipelineKind.SALES)
        assert [item.model_dump() for item in items] == snapshot


class TestPendingView:
    """The pending view is a pure predicate over stage ids."""

    @given(
        items=work_items(
            pipelines=(
                PipelineKind.ACCESSORY,
                PipelineKind.PARTNER,
                PipelineKind.EXTENSION,
                PipelineKind.LEAD,
            )
        )
    )
    @settings(max_examples=100)
    def test_pending_stages(self, items) -> None:
        expected = {
            PipelineKind.ACCESSORY: {"need-to-buy"},
            PipelineKind.PARTNER: {"ship-to-partner"},
            PipelineKind.EXTENSION: {"requested", "sales-contacted"},
            PipelineKind.LEAD: {"identify-needs"},
        }
        for item in items:
            assert is_pending(item) == (
                item.stage_id in expected[item.pipeline] and not item.archived
            )

    @given(pipeline=st.sampled_from(list(PipelineKind)), items=work_items())
    @settings(max_examples=100)
    def test_pending_board_is_subset(self, pipeline: PipelineKind, items) -> None:
        full = project_board(items, pipeline)
        pending = pending_board(items, pipeline)

        assert list(pending) == list(full)
        for stage_id, column in pending.items():
            assert all(item in full[stage_id] for item in column)
            assert all(is_pending(item) for item in column)

    def test_archived_request_is_not_pending(self) -> None:
        item = WorkItem(
            id="EXT-1",
            pipeline=PipelineKind.EXTENSION,
            stage_id="requested",
            archived=True,
        )
        assert not is_pending(item)
        assert pending_items([item], PipelineKind.EXTENSION) == []

    def test_order_pipelines_have_no_pending_stages(self) -> None:
        item = WorkItem(id="LINE-1", pipeline=PipelineKind.SALES, stage_id="receive-item")
        assert not is_pending(item)

    def test_unknown_pipeline(self) -> None:
        with pytest.raises(UnknownPipelineError):
            project_board([], "payroll")
