"""Version-based last-write-wins conflict resolution."""
from typing import Any, Dict, Optional

from northstar_sync.models.schema import (
    Entity,
    RemoteRecord,
    Resolution,
    Winner,
)


def resolve(
    local: Entity,
    remote: RemoteRecord,
    remote_fields: Optional[Dict[str, Any]] = None,
) -> Resolution:
    """Decide which state of an entity survives.

    The higher version wins; equal versions fall back to the later
    ``updated_at``; a complete tie goes to the remote. Pass ``remote_fields``
    when the record's wire fields need translating into local form first
    (note group ids).

    When the remote wins over a different local state, the local fields are
    returned as the loser snapshot; it goes to history tagged ``update``,
    also when the remote deleted the entity. When the local side wins over a
    different remote state it must be re-pushed with ``remote.version + 1``.
    Identical states need no action at all.
    """
    fields = remote.fields if remote_fields is None else remote_fields
    if local.same_state(fields, remote.is_deleted):
        return Resolution(winner=Winner.IDENTICAL)

    if (remote.version, remote.updated_at) >= (local.version, local.updated_at):
        return Resolution(
            winner=Winner.REMOTE,
            loser_snapshot=local.snapshot(),
        )
    return Resolution(winner=Winner.LOCAL, repush_version=remote.version + 1)
