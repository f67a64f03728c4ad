"""Work item persistence.

This module defines the persistence collaborator of the workflow engine:
- WorkItemRepository: Protocol the service layer depends on
- InMemoryWorkItemRepository: Dict-backed store for development and tests
- PostgresWorkItemRepository: asyncpg implementation

Stage changes and ledger entries are written in one transaction guarded by
the version column, so a stored work item never has history without the
matching stage, or the reverse.

Source:
- src/workflow/migrations/001_work_items.sql (schema definition)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

import asyncpg
from pydantic import TypeAdapter

from src.workflow.errors import DuplicateWorkItemError
from src.workflow.stages.models import HistoryCategory, PipelineKind
from src.workflow.state.models import HistoryEntry, WorkItem, WorkItemKind


logger = logging.getLogger(__name__)


_attributes_adapter = TypeAdapter(Dict[str, Any])

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "migrations" / "001_work_items.sql"


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


@runtime_checkable
class WorkItemRepository(Protocol):
    """Protocol for work item persistence.

    The repository is responsible for:
    - Persisting new work items
    - Retrieving items by id or pipeline
    - Applying updates with optimistic locking via the version field
    """

    async def save(self, item: WorkItem) -> None:
        """Persist a new work item.

        Raises:
            DuplicateWorkItemError: If the id is already stored.
        """
        ...

    async def get(self, item_id: str) -> Optional[WorkItem]:
        """Get a work item by id, or None if it does not exist."""
        ...

    async def list_by_pipeline(
        self, pipeline: PipelineKind, include_archived: bool = True
    ) -> List[WorkItem]:
        """List the work items currently in a pipeline, oldest first."""
        ...

    async def update_with_version(self, item: WorkItem) -> bool:
        """Replace a stored item whose version is item.version - 1.

        Returns:
            True if the update succeeded, False on a version conflict or
            when the item does not exist.
        """
        ...


class InMemoryWorkItemRepository:
    """In-memory implementation of WorkItemRepository.

    Items are kept in insertion order so board columns render in a stable
    order.
    """

    def __init__(self) -> None:
        self._items: Dict[str, WorkItem] = {}

    async def save(self, item: WorkItem) -> None:
        if item.id in self._items:
            raise DuplicateWorkItemError(item.id)
        self._items[item.id] = item

    async def get(self, item_id: str) -> Optional[WorkItem]:
        return self._items.get(item_id)

    async def list_by_pipeline(
        self, pipeline: PipelineKind, include_archived: bool = True
    ) -> List[WorkItem]:
        return [
            item for item in self._items.values()
            if item.pipeline == pipeline
            and (include_archived or not item.archived)
        ]

    async def update_with_version(self, item: WorkItem) -> bool:
        existing = self._items.get(item.id)
        if existing is None:
            return False
        if existing.version != item.version - 1:
            return False
        self._items[item.id] = item
        return True

    def clear(self) -> None:
        self._items.clear()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresWorkItemRepository:
    """PostgreSQL implementation of the WorkItemRepository protocol.

    Work items live in ``work_items``; ledger entries live in
    ``work_item_history`` with a per-item sequence number, and are read
    back newest first.

    Example:
        >>> async with PostgresWorkItemRepository("postgresql://...") as repo:
        ...     item = await repo.get("ITEM-1")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresWorkItemRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def ping(self) -> bool:
        """Check database connectivity for the readiness probe."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Database ping failed", extra={"error": str(e)})
            return False

    async def ensure_schema(self) -> None:
        """Create the work item tables if they do not exist.

        Raises:
            DatabaseError: If the schema cannot be applied.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_PATH.read_text())
            logger.info("Work item schema ensured")
        except Exception as e:
            logger.error(
                "Failed to apply work item schema",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to apply work item schema: {e}",
                original_error=e,
            ) from e

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _insert_history(
        self,
        conn: asyncpg.Connection,
        item_id: str,
        entries: List[HistoryEntry],
        first_seq: int,
    ) -> None:
        # entries arrive oldest first
        for offset, entry in enumerate(entries):
            await conn.execute(
                """
                INSERT INTO work_item_history (
                    work_item_id,
                    seq,
                    timestamp,
                    actor,
                    action_description,
                    category,
                    pipeline,
                    from_stage,
                    to_stage
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                item_id,
                first_seq + offset,
                entry.timestamp,
                entry.actor,
                entry.action_description,
                entry.category.value,
                entry.pipeline.value,
                entry.from_stage,
                entry.to_stage,
            )

    async def save(self, item: WorkItem) -> None:
        """Insert a new work item together with any initial history.

        Raises:
            DuplicateWorkItemError: If the id is already stored.
            DatabaseError: If the insert fails for another reason.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO work_items (
                        id,
                        kind,
                        pipeline,
                        stage_id,
                        attributes,
                        archived,
                        created_at,
                        updated_at,
                        version
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    item.id,
                    item.kind.value,
                    item.pipeline.value,
                    item.stage_id,
                    _attributes_adapter.dump_json(item.attributes).decode(),
                    item.archived,
                    item.created_at,
                    item.updated_at,
                    item.version,
                )
                await self._insert_history(
                    conn, item.id, list(reversed(item.history)), first_seq=1
                )

            logger.info(
                "Saved work item",
                extra={
                    "work_item_id": item.id,
                    "pipeline": item.pipeline.value,
                    "stage_id": item.stage_id,
                },
            )

        except asyncpg.UniqueViolationError as e:
            logger.error(
                "Work item already exists",
                extra={"work_item_id": item.id, "error": str(e)},
            )
            raise DuplicateWorkItemError(item.id) from e
        except Exception as e:
            logger.error(
                "Failed to save work item",
                extra={"work_item_id": item.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save work item: {e}",
                original_error=e,
            ) from e

    async def _load(self, conn: asyncpg.Connection, row: Any) -> WorkItem:
        history_rows = await conn.fetch(
            """
            SELECT
                timestamp,
                actor,
                action_description,
                category,
                pipeline,
                from_stage,
                to_stage
            FROM work_item_history
            WHERE work_item_id = $1
            ORDER BY seq DESC
            """,
            row["id"],
        )

        history = tuple(
            HistoryEntry(
                timestamp=_aware(hr["timestamp"]),
                actor=hr["actor"],
                action_description=hr["action_description"],
                category=HistoryCategory(hr["category"]),
                pipeline=PipelineKind(hr["pipeline"]),
                from_stage=hr["from_stage"],
                to_stage=hr["to_stage"],
            )
            for hr in history_rows
        )

        attributes = row["attributes"]
        if isinstance(attributes, str):
            attributes = json.loads(attributes)

        return WorkItem(
            id=row["id"],
            kind=WorkItemKind(row["kind"]),
            pipeline=PipelineKind(row["pipeline"]),
            stage_id=row["stage_id"],
            attributes=attributes or {},
            history=history,
            archived=row["archived"],
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            version=row["version"],
        )

    async def get(self, item_id: str) -> Optional[WorkItem]:
        """Get a work item by id with its ledger, newest first.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, kind, pipeline, stage_id, attributes, archived,
                           created_at, updated_at, version
                    FROM work_items
                    WHERE id = $1
                    """,
                    item_id,
                )
                if row is None:
                    return None
                return await self._load(conn, row)

        except Exception as e:
            logger.error(
                "Failed to get work item",
                extra={"work_item_id": item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get work item: {e}",
                original_error=e,
            ) from e

    async def list_by_pipeline(
        self, pipeline: PipelineKind, include_archived: bool = True
    ) -> List[WorkItem]:
        """List the work items currently in a pipeline, oldest first.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, kind, pipeline, stage_id, attributes, archived,
                           created_at, updated_at, version
                    FROM work_items
                    WHERE pipeline = $1 AND ($2 OR NOT archived)
                    ORDER BY created_at ASC, id ASC
                    """,
                    pipeline.value,
                    include_archived,
                )
                return [await self._load(conn, row) for row in rows]

        except Exception as e:
            logger.error(
                "Failed to list work items",
                extra={"pipeline": pipeline.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list work items: {e}",
                original_error=e,
            ) from e

    async def update_with_version(self, item: WorkItem) -> bool:
        """Update the stage and append new ledger entries atomically.

        The row is updated only if its stored version equals
        item.version - 1. Ledger entries not yet stored are inserted in
        the same transaction.

        Returns:
            True if the update succeeded, False on a version conflict.

        Raises:
            DatabaseError: If the update fails for another reason.
        """
        expected_version = item.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE work_items
                    SET pipeline = $3,
                        stage_id = $4,
                        attributes = $5,
                        archived = $6,
                        updated_at = $7,
                        version = $8
                    WHERE id = $1 AND version = $2
                    """,
                    item.id,
                    expected_version,
                    item.pipeline.value,
                    item.stage_id,
                    _attributes_adapter.dump_json(item.attributes).decode(),
                    item.archived,
                    item.updated_at,
                    item.version,
                )

                if result != "UPDATE 1":
                    logger.warning(
                        "Version conflict on work item update",
                        extra={
                            "work_item_id": item.id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                stored = await conn.fetchval(
                    """
                    SELECT COALESCE(MAX(seq), 0)
                    FROM work_item_history
                    WHERE work_item_id = $1
                    """,
                    item.id,
                )
                fresh = len(item.history) - stored
                if fresh > 0:
                    await self._insert_history(
                        conn,
                        item.id,
                        list(reversed(item.history[:fresh])),
                        first_seq=stored + 1,
                    )

            logger.info(
                "Updated work item",
                extra={
                    "work_item_id": item.id,
                    "stage_id": item.stage_id,
                    "version": item.version,
                },
            )
            return True

        except Exception as e:
            logger.error(
                "Failed to update work item",
                extra={"work_item_id": item.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update work item: {e}",
                original_error=e,
            ) from e
