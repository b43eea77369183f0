"""Repository for notes."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from northstar_sync.exceptions import (
    ConflictApplyError,
    EntityValidationError,
    ErrorCode,
    UnsyncedReferenceError,
)
from northstar_sync.models.db_models import DBGroup, DBNote
from northstar_sync.models.schema import EntityTable, Note, RemoteRecord
from northstar_sync.storage.entity_repository import EntityRepository
from northstar_sync.utils import escape_like_pattern

logger = logging.getLogger(__name__)


class NoteRepository(EntityRepository[Note]):
    """Repository for note storage and retrieval.

    Notes reference their group by local id; on the wire the group's remote
    id is used instead.
    """

    table = EntityTable.NOTES
    model = Note
    db_model = DBNote

    def _order_by(self) -> List[Any]:
        return [DBNote.updated_at.desc(), DBNote.local_id.desc()]

    def _check_references(
        self, session: Session, fields: Dict[str, Any], creating: bool
    ) -> None:
        if not creating and "group_id" not in fields:
            return
        group_id = fields.get("group_id")
        group = session.get(DBGroup, group_id) if group_id is not None else None
        if group is None or group.is_deleted:
            raise EntityValidationError(
                f"Group {group_id} does not exist or is deleted",
                field="group_id",
                value=group_id,
                code=ErrorCode.GROUP_NOT_FOUND,
            )

    def _restorable_changes(
        self, session: Session, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        if "group_id" not in changes:
            return changes
        group_id = changes["group_id"]
        group = session.get(DBGroup, group_id) if group_id is not None else None
        if group is None or group.is_deleted:
            logger.info(
                f"Keeping current group on restore: group {group_id} is gone"
            )
            return {k: v for k, v in changes.items() if k != "group_id"}
        return changes

    def notes_in_group(self, group_id: int, include_deleted: bool = False) -> List[Note]:
        """Notes filed in a group, most recently updated first."""
        with self.store.read("notes_in_group") as session:
            query = select(DBNote).where(DBNote.group_id == group_id)
            if not include_deleted:
                query = query.where(DBNote.is_deleted.is_(False))
            query = query.order_by(*self._order_by())
            return [self._to_model(n) for n in session.scalars(query).unique().all()]

    def search(self, text: str, limit: Optional[int] = None) -> List[Note]:
        """Case-insensitive substring search over live note titles and content."""
        if not text or not text.strip():
            return []
        pattern = f"%{escape_like_pattern(text.strip().lower())}%"
        with self.store.read("search_notes") as session:
            query = (
                select(DBNote)
                .where(DBNote.is_deleted.is_(False))
                .where(
                    or_(
                        func.lower(DBNote.title).like(pattern, escape="\\"),
                        func.lower(DBNote.content).like(pattern, escape="\\"),
                    )
                )
                .order_by(*self._order_by())
            )
            if limit is not None:
                query = query.limit(limit)
            return [self._to_model(n) for n in session.scalars(query).unique().all()]

    def to_wire(self, session: Session, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the local group id with the group's remote id.

        Raises:
            UnsyncedReferenceError: If the group has not reached the remote yet.
        """
        wire = dict(fields)
        if "group_id" in wire and wire["group_id"] is not None:
            remote_group_id = self.store.remote_id_of(session, wire["group_id"])
            if remote_group_id is None:
                raise UnsyncedReferenceError(
                    f"Group {wire['group_id']} has not been synced yet",
                    table=self.table.value,
                    reference_id=wire["group_id"],
                )
            wire["group_id"] = remote_group_id
        return wire

    def _fields_from_wire(self, session: Session, record: RemoteRecord) -> Dict[str, Any]:
        fields = super()._fields_from_wire(session, record)
        remote_group_id = fields.get("group_id")
        if remote_group_id is None:
            return fields
        local_group_id = self.store.local_id_for_remote(
            session, EntityTable.GROUPS, str(remote_group_id)
        )
        if local_group_id is None:
            raise ConflictApplyError(
                f"Note references unknown group {remote_group_id}",
                table=self.table.value,
                remote_id=record.id,
            )
        fields["group_id"] = local_group_id
        return fields
