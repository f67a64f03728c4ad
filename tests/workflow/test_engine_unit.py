"""Unit tests for the TransitionEngine."""

from src.workflow.stages import HistoryCategory, PipelineKind
from src.workflow.state import (
    PendingJustification,
    TransitionApplied,
    TransitionEngine,
    WorkItem,
    all_of,
)


def _item_at(engine: TransitionEngine, pipeline: PipelineKind, stage_id: str) -> WorkItem:
    return engine.new_item("ITEM-1", pipeline).model_copy(update={"stage_id": stage_id})


class TestEndToEndScenario:
    def test_finalize_then_justified_return_to_sales(self, engine: TransitionEngine) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        assert item.stage_id == "receive-item"
        assert len(item.history) == 0

        finalized = engine.attempt_transition(item, "finalize", "sale.anna")
        assert isinstance(finalized, TransitionApplied)
        assert finalized.item.stage_id == "plating-room"
        assert len(finalized.item.history) == 1
        assert finalized.item.history[0].category == HistoryCategory.TECH

        pending = engine.attempt_transition(finalized.item, "receive-item", "sale.anna")
        assert isinstance(pending, PendingJustification)
        assert pending.target_stage_id == "receive-item"
        assert finalized.item.stage_id == "plating-room"

        returned = engine.attempt_transition(
            finalized.item, "receive-item", "sale.anna", reason="wrong item tagged"
        )
        assert isinstance(returned, TransitionApplied)
        assert returned.item.stage_id == "receive-item"
        assert returned.item.pipeline == PipelineKind.SALES

        history = list(all_of(returned.item))
        assert len(history) == 2
        assert history[0].category == HistoryCategory.ALERT
        assert "wrong item tagged" in history[0].action_description
        assert history[1].category == HistoryCategory.TECH
        assert history[0].timestamp > history[1].timestamp


class TestDescriptions:
    def test_forward_description(self, engine: TransitionEngine) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        outcome = engine.attempt_transition(item, "tag", "sale.anna")
        assert outcome.entry.action_description == "moved: Receive item → Tag"
        assert outcome.entry.from_stage == "receive-item"
        assert outcome.entry.to_stage == "tag"
        assert outcome.entry.pipeline == PipelineKind.SALES

    def test_auto_chain_description_names_both_stages(self, engine: TransitionEngine) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        outcome = engine.attempt_transition(item, "finalize", "sale.anna")
        assert outcome.entry.action_description == (
            "FINALIZED → auto-advanced to PLATING ROOM (technical)"
        )

    def test_backward_description_embeds_reason(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.TECHNICAL, "leather-room")
        outcome = engine.attempt_transition(
            item, "plating-room", "tech.minh", reason="  plating peeled  "
        )
        assert outcome.entry.action_description == (
            "moved back: Leather room → Plating room. Reason: plating peeled"
        )


class TestLifecycleChain:
    def test_after_sale_back_to_technical_is_backward(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.AFTER_SALE, "delivery")
        outcome = engine.attempt_transition(item, "leather-room", "sale.anna")
        assert isinstance(outcome, PendingJustification)

    def test_sales_straight_to_after_sale_is_forward(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.SALES, "approval")
        outcome = engine.attempt_transition(item, "delivery", "sale.anna")
        assert isinstance(outcome, TransitionApplied)
        assert outcome.item.pipeline == PipelineKind.AFTER_SALE
        assert outcome.entry.category == HistoryCategory.AFTER_SALE

    def test_backward_onto_auto_chain_trigger_resolves_first(
        self, engine: TransitionEngine
    ) -> None:
        item = _item_at(engine, PipelineKind.AFTER_SALE, "feedback-request")
        outcome = engine.attempt_transition(item, "technical-done", "sale.anna")
        assert isinstance(outcome, PendingJustification)
        assert outcome.target_stage_id == "debt-and-photo-check"


class TestCareSiblings:
    def test_care_moves_are_never_backward(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.CARE, "milestone-12-months")
        outcome = engine.attempt_transition(item, "milestone-6-months", "sale.anna")
        assert isinstance(outcome, TransitionApplied)
        assert not outcome.backward


class TestArchiving:
    def test_terminal_stage_archives(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.AFTER_SALE, "feedback-request")
        outcome = engine.attempt_transition(item, "archive", "sale.anna")
        assert outcome.item.archived is True

    def test_leaving_terminal_stage_unarchives(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.WARRANTY, "complete").model_copy(
            update={"archived": True}
        )
        outcome = engine.attempt_transition(
            item, "processing", "tech.minh", reason="customer returned it"
        )
        assert outcome.item.archived is False


class TestNotificationHints:
    def test_entering_technical_notifies_technician(self, engine: TransitionEngine) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        outcome = engine.attempt_transition(item, "finalize", "sale.anna")
        assert outcome.notification is not None
        assert outcome.notification.audience == "technician"
        assert outcome.notification.pipeline == PipelineKind.TECHNICAL
        assert outcome.notification.stage_id == "plating-room"

    def test_move_within_pipeline_has_no_hint(self, engine: TransitionEngine) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        outcome = engine.attempt_transition(item, "tag", "sale.anna")
        assert outcome.notification is None

    def test_tech_notified_stage_hints_technician(self, engine: TransitionEngine) -> None:
        item = _item_at(engine, PipelineKind.EXTENSION, "manager-approved")
        outcome = engine.attempt_transition(item, "tech-notified", "manager.hoa")
        assert outcome.notification.audience == "technician"


class TestRecord:
    def test_record_appends_without_moving(self, engine: TransitionEngine) -> None:
        item = engine.new_item("EXT-1", PipelineKind.EXTENSION)
        outcome = engine.record(
            item,
            actor="manager.hoa",
            description="extension rejected at Requested",
            category=HistoryCategory.ALERT,
            attributes={"decision": "rejected"},
            archive=True,
        )
        assert outcome.item.stage_id == "requested"
        assert outcome.item.archived is True
        assert outcome.item.attributes == {"decision": "rejected"}
        assert outcome.entry.from_stage == outcome.entry.to_stage == "requested"
        assert outcome.item.version == item.version + 1
        assert item.attributes == {}

    def test_clock_drives_timestamps(self, engine: TransitionEngine, clock) -> None:
        item = engine.new_item("LINE-1", PipelineKind.SALES)
        outcome = engine.attempt_transition(item, "tag", "sale.anna")
        assert outcome.entry.timestamp == clock.current
        assert outcome.item.updated_at == clock.current
