"""Repository for groups."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from northstar_sync.config import DEFAULT_GROUPS, GROUP_COLORS, UNCATEGORIZED_GROUP
from northstar_sync.models.db_models import DBGroup, DBNote
from northstar_sync.models.schema import EntityTable, Group
from northstar_sync.storage.entity_repository import EntityRepository
from northstar_sync.storage.history_log import HistoryLog
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.storage.mutation_queue import MutationQueue
from northstar_sync.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class GroupRepository(EntityRepository[Group]):
    """Repository for groups.

    Deleting a group moves its live notes into the group named
    ``Uncategorized`` when there is one; each move is a regular queued
    note update. A never-synced group that still holds live notes is pushed
    and then deleted remotely instead of vanishing from the queue.
    """

    table = EntityTable.GROUPS
    model = Group
    db_model = DBGroup

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        history: HistoryLog,
        note_repository: Optional[NoteRepository] = None,
    ):
        super().__init__(store, queue, history)
        self.note_repository = note_repository

    def _order_by(self) -> List[Any]:
        return [func.lower(DBGroup.name), DBGroup.local_id]

    def _fill_defaults(self, session: Session, fields: Dict[str, Any]) -> Dict[str, Any]:
        if not fields.get("color"):
            fields["color"] = self._next_color(session)
        return fields

    def _used_colors(self, session: Session) -> List[str]:
        return list(
            session.scalars(
                select(DBGroup.color).where(DBGroup.is_deleted.is_(False))
            ).all()
        )

    def _next_color(self, session: Session) -> str:
        used = self._used_colors(session)
        for color in GROUP_COLORS:
            if color not in used:
                return color
        # Palette exhausted: cycle through it
        return GROUP_COLORS[len(used) % len(GROUP_COLORS)]

    def available_colors(self) -> List[str]:
        """Palette colors not used by any live group."""
        with self.store.read("available_colors") as session:
            used = set(self._used_colors(session))
        return [c for c in GROUP_COLORS if c not in used]

    def next_available_color(self) -> str:
        """Color to offer for the next group."""
        with self.store.read("next_available_color") as session:
            return self._next_color(session)

    def get_by_name(self, name: str, session: Optional[Session] = None) -> Optional[Group]:
        """Find a live group by name (case-insensitive)."""
        query = (
            select(DBGroup)
            .where(DBGroup.is_deleted.is_(False))
            .where(func.lower(DBGroup.name) == name.lower())
            .order_by(DBGroup.local_id)
            .limit(1)
        )
        if session is not None:
            db_group = session.scalars(query).first()
            return self._to_model(db_group) if db_group else None
        with self.store.read("get_group_by_name") as read_session:
            db_group = read_session.scalars(query).first()
            return self._to_model(db_group) if db_group else None

    def _before_delete(self, session: Session, db_entity: Any) -> None:
        if self.note_repository is None:
            return
        target = self.get_by_name(UNCATEGORIZED_GROUP, session=session)
        if target is None or target.local_id == db_entity.local_id:
            return
        notes = session.scalars(
            select(DBNote)
            .where(DBNote.group_id == db_entity.local_id)
            .where(DBNote.is_deleted.is_(False))
            .order_by(DBNote.local_id)
        ).unique().all()
        for db_note in notes:
            self.note_repository._apply_update(
                session, db_note, {"group_id": target.local_id}
            )
        if notes:
            logger.info(
                f"Moved {len(notes)} notes from group {db_entity.local_id} "
                f"to '{UNCATEGORIZED_GROUP}'"
            )

    def _still_referenced(self, session: Session, local_id: int) -> bool:
        # Notes left in the group are pushed with its remote id
        return (
            session.scalar(
                select(func.count())
                .select_from(DBNote)
                .where(DBNote.group_id == local_id)
                .where(DBNote.is_deleted.is_(False))
            )
            or 0
        ) > 0

    def ensure_defaults(self) -> List[Group]:
        """Create the default groups when the store holds no group at all.

        Deleted groups count: an owner who removed every group keeps it
        that way.

        Returns:
            The groups created (empty when any group already existed).
        """
        with self.store.transaction("seed_default_groups") as session:
            existing = session.scalar(select(func.count()).select_from(DBGroup)) or 0
            if existing:
                return []
            created = [
                self._create_in(session, {"name": name, "color": color})
                for name, color in DEFAULT_GROUPS
            ]
        logger.info(f"Created {len(created)} default groups")
        return created
