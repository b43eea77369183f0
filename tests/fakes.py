"""In-memory remote backend for testing.

FakeRemote behaves like the owner-scoped REST tables the sync engine talks
to, without any network:
- Ids are uuids, versions are bumped on every write (a higher version sent
  by the client is honored), ``updated_at`` is strictly increasing and a
  global ``seq`` counter breaks timestamp ties.
- ``online = False`` makes every call raise TransientNetworkError.
- ``reject(method, table)`` makes matching calls raise RejectedError.
- ``put_row`` simulates a write made by another device.
- ``gate`` (a threading.Event) can hold calls to observe concurrency.
"""
import datetime
import threading
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Set, Tuple

from northstar_sync.exceptions import RejectedError, TransientNetworkError
from northstar_sync.models.schema import (
    ENTITY_FIELDS,
    Cursor,
    EntityTable,
    RemoteRecord,
    utc_now,
)
from northstar_sync.remote.client import RemoteClient


class FakeRemote(RemoteClient):
    """Deterministic in-memory stand-in for the remote groups/notes tables."""

    def __init__(self) -> None:
        self.rows: Dict[EntityTable, Dict[str, Dict[str, Any]]] = {
            table: {} for table in EntityTable
        }
        self.online = True
        self.calls: Counter = Counter()
        self.writes: List[Tuple[str, EntityTable, Dict[str, Any]]] = []
        self.gate: Optional[threading.Event] = None
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._rejections: Set[Tuple[str, Optional[EntityTable]]] = set()
        self._lock = threading.Lock()
        self._seq = 0
        self._last_stamp: Optional[datetime.datetime] = None

    # -- test controls -------------------------------------------------------

    def reject(self, method: str, table: Optional[EntityTable] = None) -> None:
        """Reject every ``method`` call (on ``table``, or on any table)."""
        self._rejections.add((method, table))

    def accept_all(self) -> None:
        self._rejections.clear()

    def _next_stamp(self) -> Tuple[datetime.datetime, int]:
        now = utc_now()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + datetime.timedelta(microseconds=1)
        self._last_stamp = now
        self._seq += 1
        return now, self._seq

    def put_row(self, table: EntityTable, remote_id: Optional[str] = None, **values: Any) -> str:
        """Write a row the way another device would, bypassing the client API."""
        with self._lock:
            remote_id = remote_id or str(uuid.uuid4())
            stamp, seq = self._next_stamp()
            row = self.rows[table].get(remote_id)
            if row is None:
                row = {"id": remote_id, "version": 0, "created_at": stamp, "is_deleted": False}
                row.update({name: None for name in ENTITY_FIELDS[table]})
                if table == EntityTable.NOTES:
                    row["content"] = ""
                self.rows[table][remote_id] = row
            version = values.pop("version", None)
            row.update(values)
            row["version"] = version if version is not None else row["version"] + 1
            row["updated_at"] = stamp
            row["seq"] = seq
            return remote_id

    def row(self, table: EntityTable, remote_id: str) -> Dict[str, Any]:
        return self.rows[table][remote_id]

    def live_rows(self, table: EntityTable) -> List[Dict[str, Any]]:
        return [r for r in self.rows[table].values() if not r["is_deleted"]]

    @property
    def write_count(self) -> int:
        return self.calls["insert"] + self.calls["update_by_id"] + self.calls["mark_deleted"]

    # -- RemoteClient --------------------------------------------------------

    def _enter(self, method: str, table: EntityTable) -> None:
        with self._lock:
            self.calls[method] += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if not self.online:
                raise TransientNetworkError(
                    "Network is unreachable", operation=method, table=table.value
                )
            if (method, table) in self._rejections or (method, None) in self._rejections:
                raise RejectedError(
                    f"Remote rejected {method}",
                    operation=method,
                    table=table.value,
                    status_code=400,
                )
        except Exception:
            self._leave()
            raise

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def _record(self, table: EntityTable, remote_id: str) -> RemoteRecord:
        return RemoteRecord.from_row(table, dict(self.rows[table][remote_id]))

    def list_since(self, table: EntityTable, cursor: Cursor, limit: int) -> List[RemoteRecord]:
        self._enter("list_since", table)
        try:
            with self._lock:
                rows = sorted(
                    self.rows[table].values(), key=lambda r: (r["updated_at"], r["seq"])
                )
                after = [
                    r for r in rows
                    if Cursor(updated_at=r["updated_at"], seq=r["seq"]).key() > cursor.key()
                ]
                return [RemoteRecord.from_row(table, dict(r)) for r in after[:limit]]
        finally:
            self._leave()

    def insert(self, table: EntityTable, fields: Dict[str, Any]) -> RemoteRecord:
        self._enter("insert", table)
        try:
            self.writes.append(("insert", table, dict(fields)))
            values = {k: v for k, v in fields.items() if k in ENTITY_FIELDS[table]}
            values["is_deleted"] = bool(fields.get("is_deleted", False))
            remote_id = self.put_row(table, version=1, **values)
            with self._lock:
                return self._record(table, remote_id)
        finally:
            self._leave()

    def update_by_id(
        self, table: EntityTable, remote_id: str, fields: Dict[str, Any]
    ) -> RemoteRecord:
        self._enter("update_by_id", table)
        try:
            self.writes.append(("update_by_id", table, dict(fields)))
            current = self.rows[table].get(remote_id)
            if current is None:
                raise RejectedError(
                    "Remote update matched no row", operation="update", table=table.value
                )
            values = dict(fields)
            requested = values.pop("version", None)
            version = current["version"] + 1
            if requested is not None and requested > current["version"]:
                version = requested
            self.put_row(table, remote_id, version=version, **values)
            with self._lock:
                return self._record(table, remote_id)
        finally:
            self._leave()

    def mark_deleted(self, table: EntityTable, remote_id: str) -> RemoteRecord:
        self._enter("mark_deleted", table)
        try:
            self.writes.append(("mark_deleted", table, {"is_deleted": True}))
            if remote_id not in self.rows[table]:
                raise RejectedError(
                    "Remote mark_deleted matched no row",
                    operation="mark_deleted",
                    table=table.value,
                )
            self.put_row(table, remote_id, is_deleted=True)
            with self._lock:
                return self._record(table, remote_id)
        finally:
            self._leave()

    def close(self) -> None:
        self.closed = True
