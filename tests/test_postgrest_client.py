"""Tests for the PostgREST remote client, using httpx.MockTransport."""
import json

import httpx
import pytest

from northstar_sync.config import NorthstarConfig
from northstar_sync.exceptions import (
    ConfigurationError,
    ErrorCode,
    RejectedError,
    TransientNetworkError,
)
from northstar_sync.models.schema import Cursor, EntityTable, SyncSession, parse_timestamp
from northstar_sync.remote.postgrest_client import PostgrestClient

SESSION = SyncSession(owner_id="owner-1", access_token="token-abc")


def _row(**overrides):
    row = {
        "id": "g-1",
        "owner_id": "owner-1",
        "name": "Work",
        "color": "#14b8a6",
        "version": 1,
        "created_at": "2026-01-05T10:00:00Z",
        "updated_at": "2026-01-05T10:00:00.250000+00:00",
        "is_deleted": False,
        "seq": 7,
    }
    row.update(overrides)
    return row


class TestPostgrestClient:
    """Tests for request building and error classification."""

    def setup_method(self):
        self.requests = []
        self.response = httpx.Response(200, json=[_row()])

    def _handler(self, request):
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def _client(self, session=SESSION, api_key="anon-key"):
        return PostgrestClient(
            "https://example.supabase.co/",
            session,
            api_key=api_key,
            transport=httpx.MockTransport(self._handler),
        )

    def test_missing_url_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            PostgrestClient("", SESSION)
        assert exc_info.value.code == ErrorCode.CONFIG_MISSING

    def test_from_config(self):
        cfg = NorthstarConfig(remote_url="https://example.supabase.co", remote_api_key="anon")
        client = PostgrestClient.from_config(SESSION, cfg)
        try:
            assert str(client._client.base_url).startswith("https://example.supabase.co/rest/v1")
        finally:
            client.close()

    def test_headers_carry_owner_token(self):
        client = self._client()
        client.list_since(EntityTable.GROUPS, Cursor(), 50)
        request = self.requests[0]
        assert request.url.path == "/rest/v1/groups"
        assert request.headers["authorization"] == "Bearer token-abc"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["prefer"] == "return=representation"

    def test_api_key_is_used_without_access_token(self):
        client = self._client(session=SyncSession(owner_id="owner-1"))
        client.list_since(EntityTable.GROUPS, Cursor(), 50)
        assert self.requests[0].headers["authorization"] == "Bearer anon-key"

    def test_list_since_from_the_beginning(self):
        records = self._client().list_since(EntityTable.GROUPS, Cursor(), 50)
        params = self.requests[0].url.params
        assert params["owner_id"] == "eq.owner-1"
        assert params["order"] == "updated_at.asc,seq.asc"
        assert params["limit"] == "50"
        assert "or" not in params

        [record] = records
        assert record.id == "g-1"
        assert record.fields == {"name": "Work", "color": "#14b8a6"}
        assert record.cursor == Cursor(
            updated_at=parse_timestamp("2026-01-05T10:00:00.250000Z"), seq=7
        )

    def test_list_since_filters_after_cursor(self):
        cursor = Cursor(updated_at=parse_timestamp("2026-01-05T10:00:00Z"), seq=3)
        self._client().list_since(EntityTable.NOTES, cursor, 10)
        params = self.requests[0].url.params
        assert params["or"] == (
            "(updated_at.gt.2026-01-05T10:00:00+00:00,"
            "and(updated_at.eq.2026-01-05T10:00:00+00:00,seq.gt.3))"
        )

    def test_list_since_drops_unreadable_rows(self):
        self.response = httpx.Response(200, json=[_row(), {"id": "broken"}])
        records = self._client().list_since(EntityTable.GROUPS, Cursor(), 50)
        assert [r.id for r in records] == ["g-1"]

    def test_insert_sets_owner_and_strips_version(self):
        record = self._client().insert(
            EntityTable.GROUPS, {"name": "Work", "color": "#14b8a6", "version": 4}
        )
        request = self.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {
            "name": "Work",
            "color": "#14b8a6",
            "owner_id": "owner-1",
        }
        assert record.id == "g-1"
        assert record.version == 1

    def test_update_by_id_is_owner_scoped(self):
        self._client().update_by_id(EntityTable.GROUPS, "g-1", {"name": "Work", "version": 5})
        request = self.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.g-1"
        assert request.url.params["owner_id"] == "eq.owner-1"
        assert json.loads(request.content) == {"name": "Work", "version": 5}

    def test_mark_deleted(self):
        self.response = httpx.Response(200, json=[_row(is_deleted=True, version=2)])
        record = self._client().mark_deleted(EntityTable.GROUPS, "g-1")
        assert json.loads(self.requests[0].content) == {"is_deleted": True}
        assert record.is_deleted
        assert record.version == 2

    def test_update_matching_no_row_is_rejected(self):
        self.response = httpx.Response(200, json=[])
        with pytest.raises(RejectedError, match="matched no row"):
            self._client().update_by_id(EntityTable.NOTES, "missing", {"title": "x"})

    @pytest.mark.parametrize("status", [500, 503, 408, 429])
    def test_retryable_status_is_transient(self, status):
        self.response = httpx.Response(status, json={"message": "try later"})
        with pytest.raises(TransientNetworkError) as exc_info:
            self._client().insert(EntityTable.GROUPS, {"name": "Work"})
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 409, 422])
    def test_client_errors_are_rejections(self, status):
        self.response = httpx.Response(status, json={"message": "violates check constraint"})
        with pytest.raises(RejectedError) as exc_info:
            self._client().insert(EntityTable.GROUPS, {"name": "Work"})
        assert exc_info.value.status_code == status
        assert "violates check constraint" in exc_info.value.message

    def test_connection_failure_is_transient(self):
        self.response = httpx.ConnectError("connection refused")
        with pytest.raises(TransientNetworkError):
            self._client().list_since(EntityTable.GROUPS, Cursor(), 50)

    def test_timeout_is_transient(self):
        self.response = httpx.ReadTimeout("read timed out")
        with pytest.raises(TransientNetworkError, match="timed out"):
            self._client().list_since(EntityTable.GROUPS, Cursor(), 50)

    def test_non_json_body_is_rejected(self):
        self.response = httpx.Response(200, text="<html>gateway</html>")
        with pytest.raises(RejectedError, match="non-JSON"):
            self._client().list_since(EntityTable.GROUPS, Cursor(), 50)
