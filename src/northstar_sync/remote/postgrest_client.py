"""REST client for a PostgREST / Supabase style backend."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from northstar_sync.config import NorthstarConfig, config
from northstar_sync.exceptions import (
    ConfigurationError,
    ErrorCode,
    RejectedError,
    TransientNetworkError,
)
from northstar_sync.models.schema import Cursor, EntityTable, RemoteRecord, SyncSession
from northstar_sync.remote.client import RemoteClient

logger = logging.getLogger(__name__)

# Status codes that mean "try again later" rather than "no"
RETRYABLE_STATUS = {408, 429}


class PostgrestClient(RemoteClient):
    """Talks to ``{base_url}/rest/v1/{table}`` with the owner's bearer token.

    Reads are filtered by ``owner_id``; inserts set it. Every write asks for
    the resulting row back (``Prefer: return=representation``) so the caller
    learns the id, version and timestamps the remote assigned.
    """

    def __init__(
        self,
        base_url: str,
        session: SyncSession,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ConfigurationError(
                "Remote URL is not configured",
                config_key="remote_url",
                code=ErrorCode.CONFIG_MISSING,
            )
        self.session = session
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if api_key:
            headers["apikey"] = api_key
        token = session.access_token or api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, session: SyncSession, cfg: Optional[NorthstarConfig] = None
    ) -> "PostgrestClient":
        cfg = cfg or config
        return cls(
            base_url=cfg.remote_url or "",
            session=session,
            api_key=cfg.remote_api_key,
            timeout=cfg.remote_timeout,
        )

    def _request(
        self,
        method: str,
        table: EntityTable,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        try:
            response = self._client.request(method, f"/{table.value}", params=params, json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"Remote {operation} on {table.value} timed out")
            raise TransientNetworkError(
                f"Remote {operation} timed out",
                operation=operation,
                table=table.value,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Remote {operation} on {table.value} failed: {e}")
            raise TransientNetworkError(
                f"Remote {operation} failed: {e}",
                operation=operation,
                table=table.value,
                original_error=e,
            ) from e

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS:
            raise TransientNetworkError(
                f"Remote {operation} answered {status}",
                operation=operation,
                table=table.value,
                status_code=status,
            )
        if status >= 400:
            raise RejectedError(
                f"Remote rejected {operation}: {self._error_message(response)}",
                operation=operation,
                table=table.value,
                status_code=status,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise RejectedError(
                f"Remote {operation} returned a non-JSON body",
                operation=operation,
                table=table.value,
                status_code=status,
                original_error=e,
            ) from e
        if isinstance(body, dict):
            return [body]
        return list(body or [])

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)[:200]
        return str(data)[:200]

    def _single(self, rows: List[Dict[str, Any]], table: EntityTable, operation: str) -> RemoteRecord:
        if not rows:
            raise RejectedError(
                f"Remote {operation} matched no row",
                operation=operation,
                table=table.value,
            )
        try:
            return RemoteRecord.from_row(table, rows[0])
        except (KeyError, TypeError, ValueError) as e:
            raise RejectedError(
                f"Remote {operation} returned a malformed row",
                operation=operation,
                table=table.value,
                original_error=e,
            ) from e

    def list_since(self, table: EntityTable, cursor: Cursor, limit: int) -> List[RemoteRecord]:
        params = {
            "select": "*",
            "owner_id": f"eq.{self.session.owner_id}",
            "order": "updated_at.asc,seq.asc",
            "limit": str(limit),
        }
        if cursor.updated_at is not None:
            stamp = cursor.updated_at.isoformat()
            params["or"] = (
                f"(updated_at.gt.{stamp},"
                f"and(updated_at.eq.{stamp},seq.gt.{cursor.seq}))"
            )
        rows = self._request("GET", table, "list_since", params=params)
        records = []
        for row in rows:
            try:
                records.append(RemoteRecord.from_row(table, row))
            except (KeyError, TypeError, ValueError) as e:
                # Without id/updated_at/seq the row cannot even move the cursor
                logger.error(f"Dropping unreadable {table.value} row {row.get('id')}: {e}")
        return records

    def insert(self, table: EntityTable, fields: Dict[str, Any]) -> RemoteRecord:
        payload = {k: v for k, v in fields.items() if k not in ("id", "version")}
        payload["owner_id"] = self.session.owner_id
        rows = self._request("POST", table, "insert", json=payload)
        return self._single(rows, table, "insert")

    def update_by_id(
        self, table: EntityTable, remote_id: str, fields: Dict[str, Any]
    ) -> RemoteRecord:
        params = {"id": f"eq.{remote_id}", "owner_id": f"eq.{self.session.owner_id}"}
        payload = {k: v for k, v in fields.items() if k not in ("id", "owner_id")}
        rows = self._request("PATCH", table, "update", params=params, json=payload)
        return self._single(rows, table, "update")

    def mark_deleted(self, table: EntityTable, remote_id: str) -> RemoteRecord:
        params = {"id": f"eq.{remote_id}", "owner_id": f"eq.{self.session.owner_id}"}
        rows = self._request(
            "PATCH", table, "mark_deleted", params=params, json={"is_deleted": True}
        )
        return self._single(rows, table, "mark_deleted")

    def close(self) -> None:
        self._client.close()
