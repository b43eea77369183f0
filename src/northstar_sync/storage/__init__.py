"""Storage layer for the Northstar sync engine."""

from northstar_sync.storage.group_repository import GroupRepository
from northstar_sync.storage.history_log import HistoryLog
from northstar_sync.storage.live import LiveCollection
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.storage.mutation_queue import MutationQueue
from northstar_sync.storage.note_repository import NoteRepository

__all__ = [
    "LocalStore",
    "MutationQueue",
    "HistoryLog",
    "LiveCollection",
    "GroupRepository",
    "NoteRepository",
]
