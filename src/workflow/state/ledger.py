"""Append-only history ledger.

Each work item owns its ledger exclusively. Entries are inserted at the
head so the ledger is always newest-first. There is no update or delete
operation.
"""

from collections.abc import Sequence
from typing import Iterator, Tuple

from src.workflow.state.models import HistoryEntry, WorkItem


class HistoryView(Sequence):
    """Read-only, restartable view over a work item's ledger.

    Iterating twice yields the same entries in the same order. The view
    is bound to the WorkItem it was taken from; entries appended later
    produce a new WorkItem and are seen through a new view.
    """

    def __init__(self, entries: Tuple[HistoryEntry, ...]):
        self._entries = entries

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index):
        return self._entries[index]

    def __repr__(self) -> str:
        return f"HistoryView({len(self._entries)} entries)"


def append(item: WorkItem, entry: HistoryEntry) -> WorkItem:
    """Return a copy of the item with the entry inserted at the head.

    The version is not touched here; the transition engine bumps it
    together with the stage change.
    """
    return item.model_copy(
        update={
            "history": (entry,) + tuple(item.history),
            "updated_at": entry.timestamp,
        }
    )


def all_of(item: WorkItem) -> HistoryView:
    """Return the item's ledger, newest first."""
    return HistoryView(tuple(item.history))
