"""Unit tests for work item repositories.

The Postgres repository is exercised against a fake asyncpg pool that
records the statements it receives.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

import asyncpg
import pytest

from src.workflow.errors import DuplicateWorkItemError
from src.workflow.stages import HistoryCategory, PipelineKind
from src.workflow.state import (
    DatabaseError,
    HistoryEntry,
    InMemoryWorkItemRepository,
    PostgresWorkItemRepository,
    WorkItem,
    WorkItemRepository,
)


BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def run_async(coro):
    return asyncio.run(coro)


def _entry(minutes: int, to_stage: str) -> HistoryEntry:
    return HistoryEntry(
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        actor="sale.anna",
        action_description=f"moved to {to_stage}",
        category=HistoryCategory.SALES,
        pipeline=PipelineKind.SALES,
        from_stage="receive-item",
        to_stage=to_stage,
    )


def _item(version: int = 1, history: Tuple[HistoryEntry, ...] = ()) -> WorkItem:
    return WorkItem(
        id="LINE-1",
        pipeline=PipelineKind.SALES,
        stage_id=history[0].to_stage if history else "receive-item",
        history=history,
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
        version=version,
    )


class FakeConnection:
    def __init__(
        self,
        execute_result: str = "UPDATE 1",
        stored_seq: int = 0,
        row: Optional[dict] = None,
        history_rows: Optional[List[dict]] = None,
    ):
        self.execute_result = execute_result
        self.stored_seq = stored_seq
        self.row = row
        self.history_rows = history_rows or []
        self.executed: List[Tuple[str, Tuple[Any, ...]]] = []

    @asynccontextmanager
    async def transaction(self):
        yield

    async def execute(self, query: str, *args: Any) -> str:
        self.executed.append((query, args))
        if query.lstrip().startswith("UPDATE"):
            return self.execute_result
        return "INSERT 0 1"

    async def fetchval(self, query: str, *args: Any) -> Any:
        return self.stored_seq

    async def fetchrow(self, query: str, *args: Any) -> Optional[dict]:
        return self.row

    async def fetch(self, query: str, *args: Any) -> List[dict]:
        if "work_item_history" in query:
            return self.history_rows
        return [self.row] if self.row else []

    def history_inserts(self) -> List[Tuple[Any, ...]]:
        return [
            args for query, args in self.executed
            if "INSERT INTO work_item_history" in query
        ]


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _repository(conn: FakeConnection) -> PostgresWorkItemRepository:
    repository = PostgresWorkItemRepository("postgresql://shop@localhost/shop")
    repository._pool = FakePool(conn)
    return repository


class TestInMemoryRepository:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryWorkItemRepository(), WorkItemRepository)

    def test_save_rejects_duplicates(self):
        repository = InMemoryWorkItemRepository()

        async def test():
            await repository.save(_item())
            await repository.save(_item())

        with pytest.raises(DuplicateWorkItemError):
            run_async(test())

    def test_update_requires_next_version(self):
        repository = InMemoryWorkItemRepository()
        first = _item()
        second = _item(version=2, history=(_entry(1, "tag"),))

        async def test():
            await repository.save(first)
            skipped = await repository.update_with_version(
                _item(version=3, history=(_entry(1, "tag"),))
            )
            applied = await repository.update_with_version(second)
            replayed = await repository.update_with_version(second)
            return skipped, applied, replayed, await repository.get("LINE-1")

        skipped, applied, replayed, stored = run_async(test())

        assert (skipped, applied, replayed) == (False, True, False)
        assert stored == second

    def test_update_of_missing_item_fails(self):
        repository = InMemoryWorkItemRepository()
        assert run_async(repository.update_with_version(_item(version=2))) is False

    def test_list_by_pipeline_filters(self):
        repository = InMemoryWorkItemRepository()
        archived = WorkItem(
            id="EXT-1", pipeline=PipelineKind.EXTENSION, stage_id="requested", archived=True
        )
        active = WorkItem(id="EXT-2", pipeline=PipelineKind.EXTENSION, stage_id="requested")

        async def test():
            for item in (archived, _item(), active):
                await repository.save(item)
            return (
                await repository.list_by_pipeline(PipelineKind.EXTENSION),
                await repository.list_by_pipeline(
                    PipelineKind.EXTENSION, include_archived=False
                ),
            )

        everything, open_only = run_async(test())

        assert [item.id for item in everything] == ["EXT-1", "EXT-2"]
        assert [item.id for item in open_only] == ["EXT-2"]


class TestPostgresRepository:
    def test_requires_connect(self):
        repository = PostgresWorkItemRepository("postgresql://shop@localhost/shop")

        with pytest.raises(DatabaseError):
            repository.pool
        with pytest.raises(DatabaseError):
            run_async(repository.get("LINE-1"))

    def test_update_inserts_only_new_entries(self):
        conn = FakeConnection(stored_seq=1)
        repository = _repository(conn)
        item = _item(
            version=3,
            history=(_entry(2, "approval"), _entry(1, "tag")),
        )

        assert run_async(repository.update_with_version(item)) is True

        update_query, update_args = conn.executed[0]
        assert "WHERE id = $1 AND version = $2" in update_query
        assert update_args[:2] == ("LINE-1", 2)
        inserts = conn.history_inserts()
        assert len(inserts) == 1
        assert inserts[0][1] == 2
        assert inserts[0][-1] == "approval"

    def test_new_entries_stored_oldest_first(self):
        conn = FakeConnection(stored_seq=0)
        repository = _repository(conn)
        item = _item(
            version=3,
            history=(_entry(2, "approval"), _entry(1, "tag")),
        )

        run_async(repository.update_with_version(item))

        assert [(args[1], args[-1]) for args in conn.history_inserts()] == [
            (1, "tag"),
            (2, "approval"),
        ]

    def test_version_conflict_returns_false(self):
        conn = FakeConnection(execute_result="UPDATE 0")
        repository = _repository(conn)

        result = run_async(
            repository.update_with_version(_item(version=2, history=(_entry(1, "tag"),)))
        )

        assert result is False
        assert conn.history_inserts() == []

    def test_save_unique_violation_is_duplicate(self):
        conn = FakeConnection()

        async def violate(query, *args):
            raise asyncpg.UniqueViolationError("duplicate key value")

        conn.execute = violate
        repository = _repository(conn)

        with pytest.raises(DuplicateWorkItemError) as exc_info:
            run_async(repository.save(_item()))

        assert exc_info.value.work_item_id == "LINE-1"

    def test_save_writes_attributes_as_json(self):
        conn = FakeConnection()
        repository = _repository(conn)
        item = _item().model_copy(update={"attributes": {"due_at": BASE_TIME}})

        run_async(repository.save(item))

        _, args = conn.executed[0]
        assert json.loads(args[4]) == {"due_at": "2024-05-01T09:00:00Z"}

    def test_get_missing_returns_none(self):
        repository = _repository(FakeConnection(row=None))
        assert run_async(repository.get("nope")) is None

    def test_get_rebuilds_item(self):
        row = {
            "id": "LINE-1",
            "kind": "order_item",
            "pipeline": "sales",
            "stage_id": "approval",
            "attributes": '{"customer": "Mai"}',
            "archived": False,
            "created_at": datetime(2024, 5, 1, 9, 0),
            "updated_at": datetime(2024, 5, 1, 9, 2),
            "version": 3,
        }
        history_rows = [
            {
                "timestamp": entry.timestamp,
                "actor": entry.actor,
                "action_description": entry.action_description,
                "category": entry.category.value,
                "pipeline": entry.pipeline.value,
                "from_stage": entry.from_stage,
                "to_stage": entry.to_stage,
            }
            for entry in (_entry(2, "approval"), _entry(1, "tag"))
        ]
        repository = _repository(FakeConnection(row=row, history_rows=history_rows))

        item = run_async(repository.get("LINE-1"))

        assert item.stage_id == "approval"
        assert item.attributes == {"customer": "Mai"}
        assert item.created_at.tzinfo is not None
        assert [entry.to_stage for entry in item.history] == ["approval", "tag"]

    def test_query_failure_is_wrapped(self):
        conn = FakeConnection()

        async def broken(query, *args):
            raise OSError("connection reset")

        conn.fetchrow = broken
        repository = _repository(conn)

        with pytest.raises(DatabaseError) as exc_info:
            run_async(repository.get("LINE-1"))

        assert isinstance(exc_info.value.original_error, OSError)
