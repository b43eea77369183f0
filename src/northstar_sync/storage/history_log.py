"""Append-only log of entity snapshots."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from northstar_sync.models.db_models import DBHistory
from northstar_sync.models.schema import (
    EntityTable,
    HistoryEntry,
    HistoryTag,
    ensure_timezone_aware,
    utc_now,
)
from northstar_sync.storage.local_store import LocalStore

logger = logging.getLogger(__name__)


class HistoryLog:
    """Snapshots taken on creation, deletion, conflict loss and before a restore.

    Entries are never updated or removed by this class; only
    :meth:`LocalStore.clear_all` wipes them.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    @staticmethod
    def _to_model(db_entry: DBHistory) -> HistoryEntry:
        return HistoryEntry(
            id=db_entry.id,
            entity_table=EntityTable(db_entry.entity_table),
            local_id=db_entry.local_id,
            operation=HistoryTag(db_entry.operation),
            changed_at=ensure_timezone_aware(db_entry.changed_at),
            data=json.loads(db_entry.data),
        )

    def record(
        self,
        session: Session,
        table: EntityTable,
        local_id: int,
        tag: HistoryTag,
        snapshot: Dict[str, Any],
    ) -> int:
        """Append a snapshot inside the caller's transaction."""
        entry = DBHistory(
            entity_table=table.value,
            local_id=local_id,
            operation=tag.value,
            changed_at=utc_now(),
            data=json.dumps(snapshot, default=str),
        )
        session.add(entry)
        session.flush()
        logger.debug(f"History {tag.value} recorded for {table.value} {local_id}")
        return entry.id

    def list_for(self, local_id: int, limit: Optional[int] = None) -> List[HistoryEntry]:
        """History of one entity, most recent first."""
        with self.store.read("history_list") as session:
            query = (
                select(DBHistory)
                .where(DBHistory.local_id == local_id)
                .order_by(DBHistory.id.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [self._to_model(e) for e in session.scalars(query).all()]

    def get(self, entry_id: int, session: Optional[Session] = None) -> Optional[HistoryEntry]:
        if session is not None:
            entry = session.get(DBHistory, entry_id)
            return self._to_model(entry) if entry else None
        with self.store.read("history_get") as read_session:
            entry = read_session.get(DBHistory, entry_id)
            return self._to_model(entry) if entry else None
