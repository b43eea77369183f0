"""Transactional local store shared by every repository and the sync engine."""

import json
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from northstar_sync.exceptions import ErrorCode, LocalStorageError
from northstar_sync.models.db_models import (
    DBGroup,
    DBHistory,
    DBIdentity,
    DBMutation,
    DBNote,
    DBSyncState,
    get_session_factory,
    init_db,
)
from northstar_sync.models.schema import (
    Cursor,
    EntityTable,
    SyncStateRecord,
    ensure_timezone_aware,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[EntityTable], None]

_SYNC_STATE_ID = 1


class LocalStore:
    """Durable SQLite store holding entities, identities, queue, history and sync state.

    All writes go through :meth:`transaction`. Tables touched inside a
    transaction (see :meth:`touch`) are announced to subscribers once the
    transaction has committed, which is what keeps live collections fresh.
    """

    def __init__(self, db_url: Optional[str] = None, engine: Optional[Engine] = None):
        """Initialize the store.

        Args:
            db_url: SQLAlchemy URL of the database. Defaults to the configured path.
            engine: Pre-configured engine; takes precedence over ``db_url``.
        """
        self.engine = engine if engine is not None else init_db(db_url)
        self.session_factory = get_session_factory(self.engine)
        # SQLite has a single writer; serializing in-process writers avoids
        # SQLITE_BUSY when a read transaction tries to upgrade.
        self._write_lock = threading.RLock()
        self._listeners: Dict[EntityTable, List[ChangeListener]] = defaultdict(list)
        self._listener_lock = threading.Lock()

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Session]:
        """Open a write transaction that commits on success and rolls back on error.

        Raises:
            LocalStorageError: If the database rejects the transaction.
        """
        touched: Set[EntityTable] = set()
        with self._write_lock:
            session = self.session_factory()
            try:
                yield session
                session.commit()
                touched = set(session.info.get("touched", ()))
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Local store transaction '{operation}' failed: {e}")
                raise LocalStorageError(
                    f"Local store transaction failed during {operation}",
                    operation=operation,
                    code=ErrorCode.STORAGE_TRANSACTION_FAILED,
                    original_error=e,
                ) from e
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()
        self._notify(touched)

    @contextmanager
    def read(self, operation: str = "read") -> Iterator[Session]:
        """Open a read-only session.

        Raises:
            LocalStorageError: If the query fails.
        """
        session = self.session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Local store read '{operation}' failed: {e}")
            raise LocalStorageError(
                f"Local store read failed during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        finally:
            session.close()

    @staticmethod
    def touch(session: Session, table: EntityTable) -> None:
        """Record that ``table`` changed in this session's transaction."""
        session.info.setdefault("touched", set()).add(table)

    # =========================================================================
    # Change notifications
    # =========================================================================

    def subscribe(self, table: EntityTable, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener called after every committed change to ``table``.

        Returns:
            A callable that removes the listener.
        """
        with self._listener_lock:
            self._listeners[table].append(listener)

        def unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._listeners[table]:
                    self._listeners[table].remove(listener)

        return unsubscribe

    def _notify(self, tables: Set[EntityTable]) -> None:
        for table in sorted(tables, key=lambda t: t.value):
            with self._listener_lock:
                listeners = list(self._listeners.get(table, ()))
            for listener in listeners:
                try:
                    listener(table)
                except Exception as e:
                    # A failing observer must not undo a committed write
                    logger.warning(f"Change listener for {table.value} failed: {e}")

    # =========================================================================
    # Identity mapping
    # =========================================================================

    @staticmethod
    def allocate_local_id(session: Session, table: EntityTable) -> int:
        """Reserve a new, never reused local id for an entity of ``table``."""
        identity = DBIdentity(entity_table=table.value)
        session.add(identity)
        session.flush()
        return identity.local_id

    @staticmethod
    def table_of(session: Session, local_id: int) -> Optional[EntityTable]:
        identity = session.get(DBIdentity, local_id)
        return EntityTable(identity.entity_table) if identity else None

    @staticmethod
    def remote_id_of(session: Session, local_id: int) -> Optional[str]:
        identity = session.get(DBIdentity, local_id)
        return identity.remote_id if identity else None

    @staticmethod
    def local_id_for_remote(
        session: Session, table: EntityTable, remote_id: str
    ) -> Optional[int]:
        return session.scalar(
            select(DBIdentity.local_id).where(
                DBIdentity.entity_table == table.value,
                DBIdentity.remote_id == remote_id,
            )
        )

    @staticmethod
    def set_remote_id(session: Session, local_id: int, remote_id: str) -> None:
        identity = session.get(DBIdentity, local_id)
        if identity is None:
            raise LocalStorageError(
                f"No identity row for local id {local_id}",
                operation="set_remote_id",
                code=ErrorCode.STORAGE_WRITE_FAILED,
            )
        identity.remote_id = remote_id

    def lookup_table(self, local_id: int) -> Optional[EntityTable]:
        """Find which table a local id belongs to."""
        with self.read("lookup_table") as session:
            return self.table_of(session, local_id)

    # =========================================================================
    # Sync state row
    # =========================================================================

    def load_sync_state(self) -> SyncStateRecord:
        """Load the persisted sync state (defaults when never saved)."""
        with self.read("load_sync_state") as session:
            row = session.get(DBSyncState, _SYNC_STATE_ID)
            if row is None:
                return SyncStateRecord()
            raw_cursors = json.loads(row.cursors or "{}")
            cursors = {}
            for name, data in raw_cursors.items():
                try:
                    cursors[EntityTable(name)] = Cursor.from_dict(data)
                except ValueError as e:
                    logger.warning(f"Ignoring unreadable cursor for {name}: {e}")
            return SyncStateRecord(
                cursors=cursors,
                consecutive_failures=row.consecutive_failures,
                last_error=row.last_error,
                last_error_at=(
                    ensure_timezone_aware(row.last_error_at) if row.last_error_at else None
                ),
                last_success_at=(
                    ensure_timezone_aware(row.last_success_at)
                    if row.last_success_at
                    else None
                ),
            )

    def save_sync_state(self, state: SyncStateRecord) -> None:
        """Persist the sync state row."""
        with self.transaction("save_sync_state") as session:
            row = session.get(DBSyncState, _SYNC_STATE_ID)
            if row is None:
                row = DBSyncState(id=_SYNC_STATE_ID)
                session.add(row)
            row.cursors = json.dumps(
                {table.value: cursor.to_dict() for table, cursor in state.cursors.items()}
            )
            row.consecutive_failures = state.consecutive_failures
            row.last_error = state.last_error
            row.last_error_at = state.last_error_at
            row.last_success_at = state.last_success_at

    # =========================================================================
    # Maintenance
    # =========================================================================

    def clear_all(self) -> None:
        """Remove every entity, queue entry, history entry and the sync state.

        Used on sign-out. Local ids stay burned: the identity sequence is kept.
        """
        with self.transaction("clear_all") as session:
            session.execute(delete(DBMutation))
            session.execute(delete(DBHistory))
            session.execute(delete(DBNote))
            session.execute(delete(DBGroup))
            session.execute(delete(DBIdentity))
            session.execute(delete(DBSyncState))
            for table in EntityTable:
                self.touch(session, table)
        logger.info("Cleared all local data")

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self.engine.dispose()
