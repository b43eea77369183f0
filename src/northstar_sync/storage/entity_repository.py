"""Shared write path for synchronized entities.

Every local mutation goes through here: the entity row, its history entry
and its queue entry are written in one transaction. The sync engine uses the
``*_remote`` primitives to apply pulled records.
"""

import logging
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from northstar_sync.exceptions import (
    ConflictApplyError,
    EntityNotFoundError,
    EntityValidationError,
    ErrorCode,
    ValidationError,
)
from northstar_sync.models.schema import (
    ENTITY_FIELDS,
    Entity,
    EntityTable,
    HistoryTag,
    Operation,
    RemoteRecord,
    RestoreResult,
    ensure_timezone_aware,
    utc_now,
)
from northstar_sync.storage.history_log import HistoryLog
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.storage.mutation_queue import MutationQueue

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


def _validation_error(e: PydanticValidationError) -> EntityValidationError:
    first = e.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    message = first.get("msg", str(e))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return EntityValidationError(message, field=field, value=first.get("input"))


class EntityRepository(Generic[E]):
    """Repository for one entity table backed by the local store.

    Subclasses set ``table``, ``model`` and ``db_model`` and override the
    per-table hooks.
    """

    table: EntityTable
    model: Type[E]
    db_model: Type[Any]

    def __init__(self, store: LocalStore, queue: MutationQueue, history: HistoryLog):
        self.store = store
        self.queue = queue
        self.history = history

    # =========================================================================
    # Conversion and validation
    # =========================================================================

    def _to_model(self, db_entity: Any) -> E:
        data = {name: getattr(db_entity, name) for name in ENTITY_FIELDS[self.table]}
        return self.model.model_construct(
            local_id=db_entity.local_id,
            remote_id=db_entity.identity.remote_id if db_entity.identity else None,
            version=db_entity.version,
            created_at=ensure_timezone_aware(db_entity.created_at),
            updated_at=ensure_timezone_aware(db_entity.updated_at),
            is_deleted=bool(db_entity.is_deleted),
            **data,
        )

    def _validate(self, data: Dict[str, Any]) -> E:
        try:
            return self.model.model_validate(data)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

    def _check_fields(self, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(ENTITY_FIELDS[self.table])
        if unknown:
            raise EntityValidationError(
                f"Unknown field(s) for {self.table.value}: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
                code=ErrorCode.ENTITY_VALIDATION_FAILED,
            )

    def _check_references(
        self, session: Session, fields: Dict[str, Any], creating: bool
    ) -> None:
        """Validate references to other entities. Overridden per table."""

    def _fill_defaults(self, session: Session, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Complete the fields of a new entity. Overridden per table."""
        return fields

    def _order_by(self) -> List[Any]:
        return [self.db_model.local_id]

    def _load(self, session: Session, local_id: int) -> Any:
        db_entity = session.get(self.db_model, local_id)
        if db_entity is None:
            raise EntityNotFoundError(local_id)
        return db_entity

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, local_id: int) -> Optional[E]:
        """Get an entity by local id, deleted or not."""
        with self.store.read(f"get_{self.table.value}") as session:
            db_entity = session.get(self.db_model, local_id)
            return self._to_model(db_entity) if db_entity else None

    def get_all(self, include_deleted: bool = False) -> List[E]:
        """Get all entities of the table, live ones only unless asked otherwise."""
        with self.store.read(f"list_{self.table.value}") as session:
            query = select(self.db_model).order_by(*self._order_by())
            if not include_deleted:
                query = query.where(self.db_model.is_deleted.is_(False))
            return [self._to_model(e) for e in session.scalars(query).unique().all()]

    def get_by_remote_id(self, session: Session, remote_id: str) -> Optional[E]:
        local_id = self.store.local_id_for_remote(session, self.table, remote_id)
        if local_id is None:
            return None
        db_entity = session.get(self.db_model, local_id)
        return self._to_model(db_entity) if db_entity else None

    # =========================================================================
    # Local mutations
    # =========================================================================

    def create(self, fields: Dict[str, Any]) -> E:
        """Create an entity, record its creation and queue the insert.

        Raises:
            EntityValidationError: If the fields are invalid or reference a
                missing entity.
        """
        self._check_fields(fields)
        with self.store.transaction(f"create_{self.table.value}") as session:
            entity = self._create_in(session, fields)
        logger.info(f"Created {self.table.value} {entity.local_id}")
        return entity

    def _create_in(self, session: Session, fields: Dict[str, Any]) -> E:
        fields = self._fill_defaults(session, dict(fields))
        self._check_references(session, fields, creating=True)
        now = utc_now()
        entity = self._validate(
            {**fields, "local_id": 0, "version": 1, "created_at": now, "updated_at": now}
        )
        local_id = self.store.allocate_local_id(session, self.table)
        snapshot = entity.snapshot()
        session.add(
            self.db_model(
                local_id=local_id,
                version=1,
                created_at=now,
                updated_at=now,
                is_deleted=False,
                **snapshot,
            )
        )
        session.flush()
        self.history.record(session, self.table, local_id, HistoryTag.CREATE, snapshot)
        self.queue.enqueue(session, Operation.CREATE, self.table, local_id, snapshot)
        self.store.touch(session, self.table)
        return entity.model_copy(update={"local_id": local_id})

    def update(self, local_id: int, changed_fields: Dict[str, Any]) -> bool:
        """Apply a partial update.

        Returns:
            True if the entity is live (even when nothing changed), False if
            it is soft-deleted.

        Raises:
            EntityNotFoundError: If no entity has this local id.
            EntityValidationError: If the new state is invalid.
        """
        self._check_fields(changed_fields)
        with self.store.transaction(f"update_{self.table.value}") as session:
            db_entity = self._load(session, local_id)
            if db_entity.is_deleted:
                return False
            return self._apply_update(session, db_entity, changed_fields)

    def _apply_update(
        self, session: Session, db_entity: Any, changed_fields: Dict[str, Any]
    ) -> bool:
        current = self._to_model(db_entity)
        changes = {
            name: value
            for name, value in changed_fields.items()
            if getattr(current, name) != value
        }
        if not changes:
            return True
        self._check_references(session, changes, creating=False)
        updated = self._validate({**current.model_dump(), **changes})
        # Validators may normalize (e.g. color case); compare again afterwards
        changes = {
            name: getattr(updated, name)
            for name in changes
            if getattr(updated, name) != getattr(current, name)
        }
        if not changes:
            return True
        for name, value in changes.items():
            setattr(db_entity, name, value)
        db_entity.version += 1
        db_entity.updated_at = utc_now()
        self.queue.enqueue(
            session, Operation.UPDATE, self.table, db_entity.local_id, changes
        )
        self.store.touch(session, self.table)
        logger.debug(f"Updated {self.table.value} {db_entity.local_id}: {sorted(changes)}")
        return True

    def soft_delete(self, local_id: int) -> bool:
        """Mark an entity deleted and queue the deletion.

        Returns:
            False if the entity was already deleted.

        Raises:
            EntityNotFoundError: If no entity has this local id.
        """
        with self.store.transaction(f"delete_{self.table.value}") as session:
            db_entity = self._load(session, local_id)
            if db_entity.is_deleted:
                return False
            self._before_delete(session, db_entity)
            current = self._to_model(db_entity)
            self.history.record(
                session, self.table, local_id, HistoryTag.DELETE, current.snapshot()
            )
            db_entity.is_deleted = True
            db_entity.version += 1
            db_entity.updated_at = utc_now()
            self.queue.enqueue(
                session,
                Operation.DELETE,
                self.table,
                local_id,
                {"is_deleted": True},
                collapse=not self._still_referenced(session, local_id),
            )
            self.store.touch(session, self.table)
        logger.info(f"Deleted {self.table.value} {local_id}")
        return True

    def _before_delete(self, session: Session, db_entity: Any) -> None:
        """Hook run inside the delete transaction. Overridden per table."""

    def _still_referenced(self, session: Session, local_id: int) -> bool:
        """True when live entities still point at this one. Overridden per table."""
        return False

    def restore(self, local_id: int, entry_id: int) -> RestoreResult:
        """Bring an entity back to the state captured in a history entry.

        The current state is captured first (tag ``restore``) and the
        snapshot is applied as a regular local update, undeleting the entity
        if needed. Nothing happens when the entity already matches.

        Raises:
            EntityNotFoundError: If no entity has this local id.
            ValidationError: If the history entry does not belong to it.
        """
        with self.store.transaction(f"restore_{self.table.value}") as session:
            db_entity = self._load(session, local_id)
            entry = self.history.get(entry_id, session=session)
            if entry is None or entry.local_id != local_id:
                raise ValidationError(
                    f"History entry {entry_id} does not exist for entity {local_id}",
                    field="entry_id",
                    value=entry_id,
                    code=ErrorCode.HISTORY_ENTRY_NOT_FOUND,
                )
            current = self._to_model(db_entity)
            snapshot = {
                name: entry.data[name]
                for name in ENTITY_FIELDS[self.table]
                if name in entry.data
            }
            changes = self._restorable_changes(
                session,
                {
                    name: value
                    for name, value in snapshot.items()
                    if getattr(current, name) != value
                },
            )
            if not changes and not current.is_deleted:
                return RestoreResult(applied=False, entity=current)

            restored = self._validate(
                {**current.model_dump(), **changes, "is_deleted": False}
            )
            self.history.record(
                session, self.table, local_id, HistoryTag.RESTORE, current.snapshot()
            )
            payload: Dict[str, Any] = {name: getattr(restored, name) for name in changes}
            if current.is_deleted:
                payload["is_deleted"] = False
            for name in changes:
                setattr(db_entity, name, getattr(restored, name))
            db_entity.is_deleted = False
            db_entity.version += 1
            db_entity.updated_at = utc_now()
            self.queue.enqueue(session, Operation.UPDATE, self.table, local_id, payload)
            self.store.touch(session, self.table)
            session.flush()
            result = self._to_model(db_entity)
        logger.info(f"Restored {self.table.value} {local_id} from history entry {entry_id}")
        return RestoreResult(applied=True, entity=result)

    def _restorable_changes(
        self, session: Session, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Drop snapshot values that can no longer be applied. Overridden per table."""
        return changes

    # =========================================================================
    # Wire conversion and remote application (used by the sync engine)
    # =========================================================================

    def to_wire(self, session: Session, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Convert locally keyed fields into their wire form."""
        return dict(fields)

    def from_wire(self, session: Session, record: RemoteRecord) -> Dict[str, Any]:
        """Convert a remote record's fields into locally keyed, validated fields.

        Raises:
            ConflictApplyError: If the record cannot be represented locally.
        """
        fields = self._fields_from_wire(session, record)
        try:
            self.model.model_validate(
                {
                    **fields,
                    "local_id": 0,
                    "version": max(record.version, 1),
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                    "is_deleted": record.is_deleted,
                }
            )
        except PydanticValidationError as e:
            raise ConflictApplyError(
                f"Malformed {self.table.value} record: {_validation_error(e).message}",
                table=self.table.value,
                remote_id=record.id,
            ) from e
        return fields

    def _fields_from_wire(self, session: Session, record: RemoteRecord) -> Dict[str, Any]:
        return {name: record.fields.get(name) for name in ENTITY_FIELDS[self.table]}

    def full_payload(self, session: Session, local_id: int) -> Dict[str, Any]:
        """All user fields plus the deletion flag, locally keyed."""
        entity = self._to_model(self._load(session, local_id))
        return {**entity.snapshot(), "is_deleted": entity.is_deleted}

    def insert_from_remote(
        self, session: Session, record: RemoteRecord, fields: Dict[str, Any]
    ) -> int:
        """Create a local entity for a remote record never seen before."""
        local_id = self.store.allocate_local_id(session, self.table)
        self.store.set_remote_id(session, local_id, record.id)
        session.add(
            self.db_model(
                local_id=local_id,
                version=max(record.version, 1),
                created_at=record.created_at,
                updated_at=record.updated_at,
                is_deleted=record.is_deleted,
                **fields,
            )
        )
        session.flush()
        if not record.is_deleted:
            self.history.record(session, self.table, local_id, HistoryTag.CREATE, fields)
        self.store.touch(session, self.table)
        return local_id

    def overwrite_from_remote(
        self, session: Session, local_id: int, record: RemoteRecord, fields: Dict[str, Any]
    ) -> None:
        """Replace the local state with the remote one (remote won).

        Local edits still waiting in the queue lost too; they are dropped so
        the next push cannot reapply them on top of the remote state.
        """
        db_entity = self._load(session, local_id)
        self.queue.drop_pending(session, local_id)
        for name, value in fields.items():
            setattr(db_entity, name, value)
        db_entity.version = max(record.version, 1)
        db_entity.updated_at = record.updated_at
        db_entity.is_deleted = record.is_deleted
        self.store.touch(session, self.table)

    def adopt_remote_meta(self, session: Session, local_id: int, record: RemoteRecord) -> bool:
        """Take over the remote timestamp and version when the states already agree.

        Returns:
            True if anything changed.
        """
        db_entity = self._load(session, local_id)
        version = max(db_entity.version, record.version)
        updated_at = ensure_timezone_aware(db_entity.updated_at)
        if version == db_entity.version and updated_at == record.updated_at:
            return False
        db_entity.version = version
        db_entity.updated_at = record.updated_at
        self.store.touch(session, self.table)
        return True

    def queue_repush(self, session: Session, local_id: int, version: int) -> None:
        """Queue the full local state for a conflict re-push carrying ``version``."""
        db_entity = self._load(session, local_id)
        db_entity.version = max(db_entity.version, version)
        payload = self.full_payload(session, local_id)
        payload["version"] = version
        self.queue.enqueue(session, Operation.UPDATE, self.table, local_id, payload)
        self.store.touch(session, self.table)
