"""Interface of the remote row-level API the sync engine talks to."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from northstar_sync.models.schema import Cursor, EntityTable, RemoteRecord


class RemoteClient(ABC):
    """Owner-scoped access to the remote ``groups`` and ``notes`` tables.

    Implementations raise :class:`~northstar_sync.exceptions.TransientNetworkError`
    for failures worth retrying and
    :class:`~northstar_sync.exceptions.RejectedError` when the remote refuses
    the request.
    """

    @abstractmethod
    def list_since(self, table: EntityTable, cursor: Cursor, limit: int) -> List[RemoteRecord]:
        """Rows changed strictly after ``cursor``, ordered by ``(updated_at, seq)``."""

    @abstractmethod
    def insert(self, table: EntityTable, fields: Dict[str, Any]) -> RemoteRecord:
        """Insert a row; the remote assigns id, version and timestamps."""

    @abstractmethod
    def update_by_id(
        self, table: EntityTable, remote_id: str, fields: Dict[str, Any]
    ) -> RemoteRecord:
        """Patch the given fields of an existing row."""

    @abstractmethod
    def mark_deleted(self, table: EntityTable, remote_id: str) -> RemoteRecord:
        """Soft-delete a row."""

    def close(self) -> None:
        """Release network resources."""
