"""One push-then-pull sync cycle against the remote backend."""

import logging
import threading
import time
from typing import Any, Dict, Optional

from northstar_sync.config import config
from northstar_sync.exceptions import (
    ConflictApplyError,
    EntityNotFoundError,
    ErrorCode,
    LocalStorageError,
    RejectedError,
    SyncError,
    TransientNetworkError,
    UnsyncedReferenceError,
)
from northstar_sync.models.schema import (
    Cursor,
    EntityTable,
    HistoryTag,
    Operation,
    QueueEntry,
    RemoteRecord,
    SyncResult,
    SyncState,
    Winner,
    utc_now,
)
from northstar_sync.observability import _sanitize_error_message, metrics
from northstar_sync.remote.client import RemoteClient
from northstar_sync.storage.entity_repository import EntityRepository
from northstar_sync.storage.history_log import HistoryLog
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.storage.mutation_queue import MutationQueue
from northstar_sync.sync.resolver import resolve
from northstar_sync.sync.status import SyncStatus

logger = logging.getLogger(__name__)

# Pull order: notes reference groups
PULL_ORDER = (EntityTable.GROUPS, EntityTable.NOTES)


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Seconds to wait after ``failures`` consecutive failed cycles."""
    if failures <= 0:
        return 0.0
    # Cap the exponent so huge failure counts cannot overflow
    return min(base * (2 ** min(failures - 1, 32)), maximum)


class SyncEngine:
    """Drains the mutation queue to the remote, then merges remote changes.

    A cycle is push then pull. A transient failure (network, or the local
    store itself) ends the cycle in ``BACKING_OFF`` with every unsent entry
    still queued; the pull phase is skipped when the push phase failed.
    Rejected entries are dropped and reported per entity; entries that point
    at a group the remote does not know yet stay queued for the next cycle.
    No local transaction is ever held across a network call.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        history: HistoryLog,
        repositories: Dict[EntityTable, EntityRepository],
        remote: RemoteClient,
        status: Optional[SyncStatus] = None,
        page_size: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        seed_default_groups: bool = False,
    ):
        self.store = store
        self.queue = queue
        self.history = history
        self.repositories = repositories
        self.remote = remote
        self.status = status or SyncStatus()
        self.page_size = page_size or config.pull_page_size
        self.backoff_base = backoff_base if backoff_base is not None else config.backoff_base
        self.backoff_max = backoff_max if backoff_max is not None else config.backoff_max
        self.seed_default_groups = seed_default_groups
        self._cycle_lock = threading.Lock()

        self._sync_state = store.load_sync_state()
        self.status.restore(
            self._sync_state.consecutive_failures,
            self._sync_state.last_error,
            self._sync_state.last_error_at,
            self._sync_state.last_success_at,
        )
        # A crash mid-push leaves entries flagged; they are simply retried
        self.queue.clear_in_flight()

    @property
    def state(self) -> SyncState:
        return self.status.state

    @property
    def consecutive_failures(self) -> int:
        return self._sync_state.consecutive_failures

    def current_backoff(self) -> float:
        """Delay before the next retry given the current failure count."""
        return backoff_delay(
            self._sync_state.consecutive_failures, self.backoff_base, self.backoff_max
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self) -> SyncResult:
        """Run one full push+pull cycle.

        Background failures are recorded in :attr:`status`, not raised.

        Raises:
            SyncError: If another cycle is already running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise SyncError(
                "A sync cycle is already running",
                operation="run_cycle",
                code=ErrorCode.SYNC_ALREADY_RUNNING,
            )
        started = time.perf_counter()
        try:
            result = SyncResult()
            try:
                self.status.set_state(SyncState.PUSHING)
                self._push(result)
                self.status.set_state(SyncState.PULLING)
                self._pull(result)
                self._seed_default_groups(result)
            except (SyncError, LocalStorageError) as e:
                # Rejections during pull (expired token, missing table)
                # are retried like outages
                self._enter_backoff(result, e)
            else:
                self._finish_success(result)
            metrics.record_sync_cycle(result, (time.perf_counter() - started) * 1000)
            return result
        finally:
            self._cycle_lock.release()

    def _seed_default_groups(self, result: SyncResult) -> None:
        # An empty groups cursor after a pull means the remote has no groups
        if not self.seed_default_groups:
            return
        if self._sync_state.cursor_for(EntityTable.GROUPS) != Cursor():
            return
        seeded = self.repositories[EntityTable.GROUPS].ensure_defaults()
        if not seeded:
            return
        result.seeded = len(seeded)
        self.status.set_state(SyncState.PUSHING)
        self._push(result)

    def _finish_success(self, result: SyncResult) -> None:
        self._sync_state.consecutive_failures = 0
        self._sync_state.last_success_at = utc_now()
        self._persist_state()
        result.state = SyncState.IDLE
        self.status.record_success(result)
        self.status.set_state(SyncState.IDLE)
        logger.info(
            f"Sync cycle done: pushed={result.pushed} rejected={result.rejected} "
            f"held={result.held} pulled={result.pulled} applied={result.applied} "
            f"skipped={result.skipped} seeded={result.seeded}"
        )

    def _enter_backoff(self, result: SyncResult, error: Exception) -> None:
        message = _sanitize_error_message(str(error))
        self._sync_state.consecutive_failures += 1
        self._sync_state.last_error = message
        self._sync_state.last_error_at = utc_now()
        try:
            self._persist_state()
        except LocalStorageError as e:
            logger.error(f"Could not persist sync state after failure: {e}")
        delay = self.current_backoff()
        result.state = SyncState.BACKING_OFF
        result.error = message
        self.status.record_error(
            message or "", self._sync_state.consecutive_failures, retry_in=delay
        )
        self.status.set_state(SyncState.BACKING_OFF)
        logger.warning(
            f"Sync cycle failed ({self._sync_state.consecutive_failures} in a row), "
            f"retrying in {delay:.1f}s: {message}"
        )

    def _persist_state(self) -> None:
        self.store.save_sync_state(self._sync_state)

    # =========================================================================
    # Push
    # =========================================================================

    def _push(self, result: SyncResult) -> None:
        held = set()
        for entry in self.queue.drain():
            if entry.local_id in held:
                # Later changes of a held entity keep their order
                continue
            if not self.queue.mark_in_flight(entry.id):
                # Collapsed by a local delete since the drain
                continue
            try:
                record = self._push_entry(entry)
                self.queue.acknowledge(entry.id, record)
            except UnsyncedReferenceError as e:
                held.add(entry.local_id)
                self._hold(entry, e, result)
                continue
            except RejectedError as e:
                self._reject(entry, e, result)
                continue
            except (TransientNetworkError, LocalStorageError) as e:
                self._keep_for_retry(entry, e)
                raise
            self.status.clear_entity_failure(entry.local_id)
            result.pushed += 1
        self._persist_state()

    def _push_entry(self, entry: QueueEntry) -> Optional[RemoteRecord]:
        """Send one entry. Returns the remote row, or None when nothing was sent."""
        table = entry.entity_table
        repo = self.repositories[table]
        with self.store.read("push_prepare") as session:
            remote_id = self.store.remote_id_of(session, entry.local_id)
            try:
                if entry.operation == Operation.DELETE:
                    if remote_id is None:
                        # Never reached the remote; nothing to delete there
                        return None
                    call = ("mark_deleted", None)
                elif remote_id is None:
                    payload = (
                        entry.payload
                        if entry.operation == Operation.CREATE
                        else repo.full_payload(session, entry.local_id)
                    )
                    call = ("insert", repo.to_wire(session, self._strip_meta(payload)))
                else:
                    call = ("update", repo.to_wire(session, entry.payload))
            except EntityNotFoundError as e:
                raise RejectedError(
                    f"Entity {entry.local_id} no longer exists locally",
                    operation=entry.operation.value,
                    table=table.value,
                    original_error=e,
                ) from e

        method, wire = call
        logger.debug(f"Pushing {entry.operation.value} {table.value} {entry.local_id} ({method})")
        if method == "insert":
            return self.remote.insert(table, wire)
        if method == "update":
            return self.remote.update_by_id(table, remote_id, wire)
        return self.remote.mark_deleted(table, remote_id)

    @staticmethod
    def _strip_meta(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k != "version"}

    def _reject(self, entry: QueueEntry, error: RejectedError, result: SyncResult) -> None:
        logger.warning(
            f"Remote rejected {entry.operation.value} of {entry.entity_table.value} "
            f"{entry.local_id}; dropping entry {entry.id}: {error}"
        )
        self.queue.discard(entry.id)
        result.rejected += 1
        result.rejected_ids.append(entry.local_id)
        self.status.record_entity_failure(entry.local_id, str(error))

    def _hold(
        self, entry: QueueEntry, error: UnsyncedReferenceError, result: SyncResult
    ) -> None:
        logger.info(
            f"Holding {entry.operation.value} of {entry.entity_table.value} "
            f"{entry.local_id} (entry {entry.id}): {error.message}"
        )
        self._keep_for_retry(entry, error)
        result.held += 1
        self.status.record_entity_failure(entry.local_id, error.message)

    def _keep_for_retry(self, entry: QueueEntry, error: Exception) -> None:
        try:
            self.queue.record_failure(entry.id, str(error))
        except LocalStorageError as e:
            logger.error(f"Could not record failure of queue entry {entry.id}: {e}")

    # =========================================================================
    # Pull
    # =========================================================================

    def _pull(self, result: SyncResult) -> None:
        for table in PULL_ORDER:
            self._pull_table(table, result)

    def _pull_table(self, table: EntityTable, result: SyncResult) -> None:
        repo = self.repositories[table]
        cursor = self._sync_state.cursor_for(table)
        while True:
            records = self.remote.list_since(table, cursor, self.page_size)
            start = cursor
            for record in records:
                result.pulled += 1
                try:
                    outcome = self._apply_record(repo, record)
                except ConflictApplyError as e:
                    result.skipped += 1
                    logger.warning(f"Skipping remote {table.value} {record.id}: {e}")
                else:
                    if outcome is not Winner.IDENTICAL:
                        result.applied += 1
                    if outcome is Winner.LOCAL:
                        result.conflicts += 1
                cursor = cursor.advance(record.cursor)
            self._sync_state.cursors[table] = cursor
            self._persist_state()
            if len(records) < self.page_size or cursor == start:
                break

    def _apply_record(self, repo: EntityRepository, record: RemoteRecord) -> Winner:
        """Merge one remote record in its own transaction.

        Returns:
            REMOTE when the local store took the remote state (including new
            entities), LOCAL when the local state won and was queued for
            re-push, IDENTICAL when both already agreed.

        Raises:
            ConflictApplyError: If the record cannot be applied locally.
        """
        table = repo.table
        with self.store.transaction(f"apply_{table.value}") as session:
            fields = repo.from_wire(session, record)
            local = repo.get_by_remote_id(session, record.id)
            if local is None:
                local_id = repo.insert_from_remote(session, record, fields)
                logger.debug(f"Pulled new {table.value} {record.id} as {local_id}")
                return Winner.REMOTE

            resolution = resolve(local, record, fields)
            if resolution.winner is Winner.IDENTICAL:
                repo.adopt_remote_meta(session, local.local_id, record)
            elif resolution.winner is Winner.REMOTE:
                self.history.record(
                    session,
                    table,
                    local.local_id,
                    HistoryTag.UPDATE,
                    resolution.loser_snapshot,
                )
                repo.overwrite_from_remote(session, local.local_id, record, fields)
                logger.info(
                    f"Remote v{record.version} of {table.value} {local.local_id} "
                    f"replaced local v{local.version}"
                )
            else:
                repo.queue_repush(session, local.local_id, resolution.repush_version)
                logger.info(
                    f"Local v{local.version} of {table.value} {local.local_id} beat "
                    f"remote v{record.version}; re-pushing as v{resolution.repush_version}"
                )
            return resolution.winner
