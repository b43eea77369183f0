"""Durable queue of local mutations waiting for remote acknowledgement."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from northstar_sync.models.db_models import DB_MODELS, DBMutation
from northstar_sync.models.schema import (
    EntityTable,
    Operation,
    QueueEntry,
    RemoteRecord,
    ensure_timezone_aware,
    utc_now,
)
from northstar_sync.observability import _sanitize_error_message
from northstar_sync.storage.local_store import LocalStore

logger = logging.getLogger(__name__)


class MutationQueue:
    """Ordered log of pending local changes.

    Entries are appended inside the caller's entity transaction and removed
    only once the remote has acknowledged them. Queue order is id order,
    which is creation order.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    @staticmethod
    def _to_model(db_entry: DBMutation) -> QueueEntry:
        return QueueEntry(
            id=db_entry.id,
            operation=Operation(db_entry.operation),
            entity_table=EntityTable(db_entry.entity_table),
            local_id=db_entry.local_id,
            payload=json.loads(db_entry.payload or "{}"),
            created_at=ensure_timezone_aware(db_entry.created_at),
            retry_count=db_entry.retry_count,
            last_error=db_entry.last_error,
            in_flight=db_entry.in_flight,
        )

    def enqueue(
        self,
        session: Session,
        operation: Operation,
        table: EntityTable,
        local_id: int,
        changed_fields: Dict[str, Any],
        collapse: bool = True,
    ) -> Optional[int]:
        """Append a mutation inside the caller's transaction.

        A delete of an entity that never reached the remote and still has its
        create waiting collapses the whole history of that entity: the
        pending entries are dropped and nothing is queued. Pass
        ``collapse=False`` when other queued changes still need the entity
        to exist remotely.

        Returns:
            The new entry id, or None when the delete collapsed.
        """
        if (
            collapse
            and operation == Operation.DELETE
            and self._collapse(session, local_id)
        ):
            return None

        entry = DBMutation(
            operation=operation.value,
            entity_table=table.value,
            local_id=local_id,
            payload=json.dumps(changed_fields, default=str),
            created_at=utc_now(),
        )
        session.add(entry)
        session.flush()
        logger.debug(
            f"Queued {operation.value} for {table.value} {local_id} (entry {entry.id})"
        )
        return entry.id

    def _collapse(self, session: Session, local_id: int) -> bool:
        if self.store.remote_id_of(session, local_id):
            return False
        entries = session.scalars(
            select(DBMutation)
            .where(DBMutation.local_id == local_id)
            .order_by(DBMutation.id)
        ).all()
        has_create = any(e.operation == Operation.CREATE.value for e in entries)
        if not has_create or any(e.in_flight for e in entries):
            return False
        for entry in entries:
            session.delete(entry)
        logger.debug(
            f"Collapsed {len(entries)} pending entries for never-synced entity {local_id}"
        )
        return True

    def drop_pending(self, session: Session, local_id: int) -> int:
        """Delete the entity's entries that are not being pushed right now.

        Runs inside the caller's transaction. Used when a remote state
        replaces the local one, so the superseded edits are never sent.

        Returns:
            Number of entries dropped.
        """
        entries = session.scalars(
            select(DBMutation)
            .where(DBMutation.local_id == local_id)
            .where(DBMutation.in_flight.is_(False))
        ).all()
        for entry in entries:
            session.delete(entry)
        if entries:
            logger.info(
                f"Dropped {len(entries)} superseded queue entries for entity {local_id}"
            )
        return len(entries)

    def drain(self) -> List[QueueEntry]:
        """Return all pending entries, oldest first."""
        with self.store.read("queue_drain") as session:
            entries = session.scalars(select(DBMutation).order_by(DBMutation.id)).all()
            return [self._to_model(e) for e in entries]

    def get(self, entry_id: int) -> Optional[QueueEntry]:
        with self.store.read("queue_get") as session:
            entry = session.get(DBMutation, entry_id)
            return self._to_model(entry) if entry else None

    def pending_for(self, local_id: int) -> List[QueueEntry]:
        """Pending entries for one entity, oldest first."""
        with self.store.read("queue_pending_for") as session:
            entries = session.scalars(
                select(DBMutation)
                .where(DBMutation.local_id == local_id)
                .order_by(DBMutation.id)
            ).all()
            return [self._to_model(e) for e in entries]

    def pending_count(self) -> int:
        with self.store.read("queue_pending_count") as session:
            return session.scalar(select(func.count()).select_from(DBMutation)) or 0

    def mark_in_flight(self, entry_id: int) -> bool:
        """Flag an entry as being pushed.

        Returns:
            False if the entry no longer exists (it collapsed meanwhile).
        """
        with self.store.transaction("queue_mark_in_flight") as session:
            entry = session.get(DBMutation, entry_id)
            if entry is None:
                return False
            entry.in_flight = True
            return True

    def clear_in_flight(self) -> int:
        """Clear every in-flight flag (startup recovery after a crash mid-push).

        Returns:
            Number of entries that were flagged.
        """
        with self.store.transaction("queue_clear_in_flight") as session:
            result = session.execute(
                update(DBMutation)
                .where(DBMutation.in_flight.is_(True))
                .values(in_flight=False)
            )
            count = result.rowcount or 0
        if count:
            logger.info(f"Cleared in-flight flag on {count} queue entries")
        return count

    def record_failure(self, entry_id: int, error: str) -> None:
        """Keep an entry after a transient failure, bumping its retry count."""
        with self.store.transaction("queue_record_failure") as session:
            entry = session.get(DBMutation, entry_id)
            if entry is None:
                return
            entry.in_flight = False
            entry.retry_count += 1
            entry.last_error = _sanitize_error_message(error)

    def discard(self, entry_id: int) -> bool:
        """Drop an entry the remote rejected."""
        with self.store.transaction("queue_discard") as session:
            entry = session.get(DBMutation, entry_id)
            if entry is None:
                return False
            session.delete(entry)
            return True

    def acknowledge(self, entry_id: int, remote_record: Optional[RemoteRecord]) -> None:
        """Remove an acknowledged entry and write back what the remote assigned.

        The remote id is stored in the identity table and the local version
        is raised to the remote's. When no other mutation of the entity is
        pending the remote timestamp is adopted too, so the echo of this write
        in the next pull compares equal.
        """
        with self.store.transaction("queue_acknowledge") as session:
            entry = session.get(DBMutation, entry_id)
            if entry is None:
                logger.warning(f"Acknowledged queue entry {entry_id} no longer exists")
                return
            local_id = entry.local_id
            table = EntityTable(entry.entity_table)
            session.delete(entry)
            if remote_record is None:
                return

            current_remote_id = self.store.remote_id_of(session, local_id)
            if current_remote_id is None:
                self.store.set_remote_id(session, local_id, remote_record.id)
            elif current_remote_id != remote_record.id:
                logger.warning(
                    f"Remote answered with id {remote_record.id} for {table.value} "
                    f"{local_id}, already mapped to {current_remote_id}"
                )

            db_entity = session.get(DB_MODELS[table.value], local_id)
            if db_entity is None:
                return
            db_entity.version = max(db_entity.version, remote_record.version)
            others_pending = session.scalar(
                select(func.count())
                .select_from(DBMutation)
                .where(DBMutation.local_id == local_id, DBMutation.id != entry_id)
            )
            if not others_pending:
                db_entity.updated_at = remote_record.updated_at
            self.store.touch(session, table)
