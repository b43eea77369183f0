"""Data models for the Northstar sync engine."""

import datetime
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from northstar_sync.utils import is_hex_color


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way in, so every timestamp read back from the
    local store is naive UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise
        converted to UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime.datetime:
    """Parse a wire timestamp (ISO 8601 string or datetime) into aware UTC."""
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    # PostgREST emits "+00:00"; some backends still emit a bare "Z"
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_timezone_aware(datetime.datetime.fromisoformat(text))


class EntityTable(str, Enum):
    """Entity tables shared by the local store and the remote backend."""

    GROUPS = "groups"
    NOTES = "notes"


class Operation(str, Enum):
    """Kinds of queued local mutations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class HistoryTag(str, Enum):
    """Why a history snapshot was taken."""

    CREATE = "create"  # Entity came into existence
    DELETE = "delete"  # Entity was soft-deleted
    UPDATE = "update"  # Local state lost a conflict against the remote
    RESTORE = "restore"  # State captured right before a restore


class SyncState(str, Enum):
    """States of the sync engine."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    BACKING_OFF = "backing_off"


class TriggerReason(str, Enum):
    """Why a sync cycle was requested."""

    MUTATION = "mutation"
    RECONNECT = "reconnect"
    PERIODIC = "periodic"
    MANUAL = "manual"
    BACKOFF_TIMER = "backoff_timer"


# User-visible fields per table, in display order
ENTITY_FIELDS: Dict[EntityTable, Tuple[str, ...]] = {
    EntityTable.GROUPS: ("name", "color"),
    EntityTable.NOTES: ("title", "content", "group_id"),
}


class Entity(BaseModel):
    """Common shape of every synchronized entity."""

    table: ClassVar[EntityTable]

    local_id: int = Field(..., description="Local identifier, never reused")
    remote_id: Optional[str] = Field(
        default=None, description="Identifier assigned by the remote on first push"
    )
    version: int = Field(default=1, ge=1, description="Monotonic version counter")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the entity was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the entity was last changed (UTC)"
    )
    is_deleted: bool = Field(default=False, description="Soft-delete flag")

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        """Normalize timestamps to aware UTC."""
        return ensure_timezone_aware(v)

    def snapshot(self) -> Dict[str, Any]:
        """Return the user-visible fields of the entity."""
        return {name: getattr(self, name) for name in ENTITY_FIELDS[self.table]}

    def same_state(self, fields: Dict[str, Any], is_deleted: bool) -> bool:
        """Check whether the given user fields and deletion flag match this entity."""
        return self.is_deleted == is_deleted and self.snapshot() == {
            name: fields.get(name) for name in ENTITY_FIELDS[self.table]
        }


class Group(Entity):
    """A named, colored collection of notes."""

    table: ClassVar[EntityTable] = EntityTable.GROUPS

    name: str = Field(..., description="Group name (1-100 characters)")
    color: str = Field(..., description="Display color as #rrggbb")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not blank and fits the column."""
        if not v or not v.strip():
            raise ValueError("Group name cannot be empty")
        if len(v) > 100:
            raise ValueError("Group name cannot exceed 100 characters")
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        """Validate the color format."""
        if not is_hex_color(v):
            raise ValueError(f"Color must be a #rrggbb string, got {v!r}")
        return v.lower()


class Note(Entity):
    """A note, optionally filed in a group."""

    table: ClassVar[EntityTable] = EntityTable.NOTES

    title: str = Field(..., description="Title of the note (1-200 characters)")
    content: str = Field(default="", description="Content of the note")
    group_id: Optional[int] = Field(
        default=None, description="Local id of the group the note is filed in"
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty and fits the column."""
        if not v or not v.strip():
            raise ValueError("Title cannot be empty")
        if len(v) > 200:
            raise ValueError("Title cannot exceed 200 characters")
        return v


ENTITY_MODELS = {
    EntityTable.GROUPS: Group,
    EntityTable.NOTES: Note,
}


class QueueEntry(BaseModel):
    """A pending local mutation waiting for remote acknowledgement."""

    id: int
    operation: Operation
    entity_table: EntityTable
    local_id: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime.datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    last_error: Optional[str] = None
    in_flight: bool = False


class HistoryEntry(BaseModel):
    """An immutable snapshot of an entity's user-visible fields."""

    id: int
    entity_table: EntityTable
    local_id: int
    operation: HistoryTag
    changed_at: datetime.datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class Cursor(BaseModel):
    """High-water mark of remote changes already seen for one table."""

    updated_at: Optional[datetime.datetime] = None
    seq: int = 0

    model_config = {"frozen": True}

    def key(self) -> Tuple[datetime.datetime, int]:
        floor = datetime.datetime.min.replace(tzinfo=timezone.utc)
        return (self.updated_at or floor, self.seq)

    def advance(self, other: "Cursor") -> "Cursor":
        """Return whichever cursor is further along."""
        return other if other.key() > self.key() else self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Cursor":
        if not data or not data.get("updated_at"):
            return cls()
        return cls(updated_at=parse_timestamp(data["updated_at"]), seq=int(data.get("seq", 0)))


class RemoteRecord(BaseModel):
    """A row as returned by the remote backend.

    ``fields`` holds the entity fields in wire form; for notes ``group_id``
    is the group's remote id.
    """

    id: str
    version: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    is_deleted: bool = False
    seq: int = 0
    fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> datetime.datetime:
        return parse_timestamp(v)

    @property
    def cursor(self) -> Cursor:
        return Cursor(updated_at=self.updated_at, seq=self.seq)

    @classmethod
    def from_row(cls, table: EntityTable, row: Dict[str, Any]) -> "RemoteRecord":
        """Build a record from a wire row, keeping only the table's entity fields."""
        return cls(
            id=str(row["id"]),
            version=int(row.get("version") or 1),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            is_deleted=bool(row.get("is_deleted", False)),
            seq=int(row.get("seq") or 0),
            fields={name: row.get(name) for name in ENTITY_FIELDS[table]},
        )


class SyncSession(BaseModel):
    """Credentials of the signed-in owner, passed explicitly to the sync stack."""

    owner_id: str = Field(..., description="Owner every remote call is scoped to")
    access_token: Optional[str] = Field(
        default=None, description="Bearer token for the remote backend"
    )

    model_config = {"frozen": True}

    @field_validator("owner_id")
    @classmethod
    def validate_owner_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("owner_id cannot be empty")
        return v


class SyncStateRecord(BaseModel):
    """The persisted single sync-state row."""

    cursors: Dict[EntityTable, Cursor] = Field(default_factory=dict)
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime.datetime] = None
    last_success_at: Optional[datetime.datetime] = None

    def cursor_for(self, table: EntityTable) -> Cursor:
        return self.cursors.get(table, Cursor())


class Winner(str, Enum):
    """Outcome of comparing a local entity with a remote record."""

    LOCAL = "local"
    REMOTE = "remote"
    IDENTICAL = "identical"


@dataclass
class Resolution:
    """Result of conflict resolution.

    Attributes:
        winner: Which side's state should be kept.
        loser_snapshot: Local fields to record in history when the remote wins.
        repush_version: Version to send when the local state must be re-pushed.
    """

    winner: Winner
    loser_snapshot: Optional[Dict[str, Any]] = None
    repush_version: Optional[int] = None


@dataclass
class RestoreResult:
    """Outcome of restoring an entity from a history entry."""

    applied: bool
    entity: Entity


@dataclass
class SyncResult:
    """Counters for one sync cycle."""

    pushed: int = 0
    rejected: int = 0
    pulled: int = 0
    applied: int = 0
    skipped: int = 0
    conflicts: int = 0
    # Entries kept queued because they point at an unsynced entity
    held: int = 0
    seeded: int = 0
    state: SyncState = SyncState.IDLE
    error: Optional[str] = None
    rejected_ids: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "rejected": self.rejected,
            "pulled": self.pulled,
            "applied": self.applied,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "held": self.held,
            "seeded": self.seeded,
            "state": self.state.value,
            "error": self.error,
        }
