"""Service layer: the repository interface consumed by the UI collaborator."""

import logging
import threading
from typing import Any, Dict, List, Optional, Union

from northstar_sync.config import config
from northstar_sync.exceptions import (
    EntityNotFoundError,
    ErrorCode,
    SyncError,
    ValidationError,
)
from northstar_sync.models.schema import (
    Entity,
    EntityTable,
    Group,
    HistoryEntry,
    Note,
    RestoreResult,
    SyncSession,
    TriggerReason,
)
from northstar_sync.observability import traced
from northstar_sync.remote.client import RemoteClient
from northstar_sync.remote.postgrest_client import PostgrestClient
from northstar_sync.storage.entity_repository import EntityRepository
from northstar_sync.storage.group_repository import GroupRepository
from northstar_sync.storage.history_log import HistoryLog
from northstar_sync.storage.live import LiveCollection
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.storage.mutation_queue import MutationQueue
from northstar_sync.storage.note_repository import NoteRepository
from northstar_sync.sync.engine import SyncEngine
from northstar_sync.sync.scheduler import SyncWorker
from northstar_sync.sync.status import SyncStatus

logger = logging.getLogger(__name__)


def _as_table(table: Union[str, EntityTable]) -> EntityTable:
    try:
        return EntityTable(table)
    except ValueError:
        raise ValidationError(
            f"Unknown entity table: {table}",
            field="table",
            value=table,
            code=ErrorCode.INVALID_ENTITY_TABLE,
        )


class NotebookService:
    """Local-first access to notes and groups plus control of background sync.

    Every mutation is committed locally together with its queue entry and
    then nudges the sync worker. Reads never touch the network.
    """

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        db_url: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            store: Local store to use. Created from ``db_url`` (or the
                configured database path) if None.
            db_url: SQLAlchemy URL, only used when ``store`` is None.
        """
        self.store = store if store is not None else LocalStore(db_url=db_url)
        self.queue = MutationQueue(self.store)
        self.history = HistoryLog(self.store)
        self.notes = NoteRepository(self.store, self.queue, self.history)
        self.groups = GroupRepository(
            self.store, self.queue, self.history, note_repository=self.notes
        )
        self._repositories: Dict[EntityTable, EntityRepository] = {
            EntityTable.GROUPS: self.groups,
            EntityTable.NOTES: self.notes,
        }
        self.status = SyncStatus()
        self._sync_lock = threading.Lock()
        self._session: Optional[SyncSession] = None
        self._remote: Optional[RemoteClient] = None
        self._engine: Optional[SyncEngine] = None
        self._worker: Optional[SyncWorker] = None

    # =========================================================================
    # Lookups
    # =========================================================================

    def repository_for(self, table: Union[str, EntityTable]) -> EntityRepository:
        return self._repositories[_as_table(table)]

    def _repository_for_id(self, local_id: int) -> EntityRepository:
        table = self.store.lookup_table(local_id)
        if table is None:
            raise EntityNotFoundError(local_id)
        return self._repositories[table]

    def get_entity(self, local_id: int) -> Entity:
        """Get a note or group by local id (deleted ones included).

        Raises:
            EntityNotFoundError: If the id is unknown.
        """
        entity = self._repository_for_id(local_id).get(local_id)
        if entity is None:
            raise EntityNotFoundError(local_id)
        return entity

    def query_all(self, table: Union[str, EntityTable]) -> LiveCollection:
        """Live, automatically refreshed list of the table's non-deleted entities."""
        repository = self.repository_for(table)
        return LiveCollection(self.store, repository.table, repository.get_all)

    def list_groups(self, include_deleted: bool = False) -> List[Group]:
        return self.groups.get_all(include_deleted=include_deleted)

    def list_notes(self, include_deleted: bool = False) -> List[Note]:
        return self.notes.get_all(include_deleted=include_deleted)

    def notes_in_group(self, group_id: int) -> List[Note]:
        return self.notes.notes_in_group(group_id)

    def search_notes(self, query: str, limit: Optional[int] = None) -> List[Note]:
        return self.notes.search(query, limit=limit)

    def available_colors(self) -> List[str]:
        return self.groups.available_colors()

    def next_available_color(self) -> str:
        return self.groups.next_available_color()

    # =========================================================================
    # Mutations
    # =========================================================================

    @traced("create_entity")
    def create_entity(self, table: Union[str, EntityTable], fields: Dict[str, Any]) -> int:
        """Create a note or group and return its local id.

        Raises:
            ValidationError: If the table is unknown.
            EntityValidationError: If the fields are invalid.
        """
        entity = self.repository_for(table).create(fields)
        self._after_mutation()
        return entity.local_id

    def create_group(self, name: str, color: Optional[str] = None) -> Group:
        group = self.groups.create({"name": name, "color": color})
        self._after_mutation()
        return group

    def create_note(self, title: str, content: str, group_id: int) -> Note:
        note = self.notes.create({"title": title, "content": content, "group_id": group_id})
        self._after_mutation()
        return note

    @traced("update_entity")
    def update_entity(self, local_id: int, changed_fields: Dict[str, Any]) -> bool:
        """Apply a partial update.

        Returns:
            False if the entity is soft-deleted, True otherwise.

        Raises:
            EntityNotFoundError: If the id is unknown.
            EntityValidationError: If the resulting state is invalid.
        """
        updated = self._repository_for_id(local_id).update(local_id, changed_fields)
        if updated:
            self._after_mutation()
        return updated

    @traced("soft_delete_entity")
    def soft_delete_entity(self, local_id: int) -> bool:
        """Soft-delete an entity. Returns False if it was already deleted."""
        deleted = self._repository_for_id(local_id).soft_delete(local_id)
        if deleted:
            self._after_mutation()
        return deleted

    def list_history(self, local_id: int, limit: Optional[int] = None) -> List[HistoryEntry]:
        """History entries of an entity, most recent first."""
        self._repository_for_id(local_id)
        return self.history.list_for(local_id, limit=limit)

    @traced("restore")
    def restore(self, local_id: int, entry_id: int) -> RestoreResult:
        """Restore an entity to a history snapshot."""
        result = self._repository_for_id(local_id).restore(local_id, entry_id)
        if result.applied:
            self._after_mutation()
        return result

    def _after_mutation(self) -> None:
        self.trigger_immediate_sync(TriggerReason.MUTATION)

    # =========================================================================
    # Sync control
    # =========================================================================

    @property
    def sync_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive

    def start_sync(
        self,
        session: SyncSession,
        remote_client: Optional[RemoteClient] = None,
        interval: Optional[float] = None,
    ) -> None:
        """Start background sync for a signed-in owner.

        Args:
            session: Owner id and access token every remote call is scoped to.
            remote_client: Remote client to use; a PostgREST client built from
                the configuration if None.
            interval: Periodic sync interval in seconds (0 disables it).
        """
        with self._sync_lock:
            self._stop_worker()
            self._session = session
            self._remote = remote_client or PostgrestClient.from_config(session)
            self._engine = SyncEngine(
                self.store,
                self.queue,
                self.history,
                self._repositories,
                self._remote,
                status=self.status,
                seed_default_groups=config.seed_default_groups,
            )
            self._worker = SyncWorker(
                self._engine,
                interval=config.sync_interval if interval is None else interval,
            )
            self._worker.start()
        logger.info(f"Sync started for owner {session.owner_id}")

    def stop_sync(self, clear_local_data: bool = False) -> None:
        """Stop background sync; optionally wipe local data (sign-out)."""
        with self._sync_lock:
            self._stop_worker()
            self._session = None
        if clear_local_data:
            self.clear_local_data()

    def _stop_worker(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None
        if self._remote is not None:
            self._remote.close()
            self._remote = None
        self._engine = None

    def clear_local_data(self) -> None:
        """Delete every local entity, queue entry, history entry and the sync state."""
        self.store.clear_all()
        self.status.reset()

    def trigger_immediate_sync(
        self, reason: TriggerReason = TriggerReason.MANUAL
    ) -> Optional[int]:
        """Ask the worker for a cycle. No-op while sync is stopped."""
        worker = self._worker
        if worker is None:
            return None
        return worker.trigger(reason)

    def notify_connectivity(self, online: bool) -> None:
        """Tell the worker the network came back."""
        if online:
            self.trigger_immediate_sync(TriggerReason.RECONNECT)

    def sync_now(self, timeout: Optional[float] = 60.0) -> Dict[str, Any]:
        """Run a manual cycle and wait for it.

        Raises:
            SyncError: If sync has not been started.
        """
        worker = self._worker
        if worker is None:
            raise SyncError(
                "Sync is not running; sign in first",
                operation="sync_now",
                code=ErrorCode.SYNC_NOT_CONFIGURED,
            )
        completed = worker.sync_now(timeout=timeout)
        status = self.sync_status()
        status["completed"] = completed
        return status

    def sync_status(self) -> Dict[str, Any]:
        """Snapshot of the sync status plus the number of pending mutations."""
        status = self.status.snapshot()
        status["running"] = self.sync_running
        status["owner_id"] = self._session.owner_id if self._session else None
        status["pending"] = self.queue.pending_count()
        return status

    def close(self) -> None:
        self.stop_sync()
        self.store.close()
