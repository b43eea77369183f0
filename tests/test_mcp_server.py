# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
from unittest.mock import MagicMock, patch

import pytest

from northstar_sync.exceptions import EntityNotFoundError
from northstar_sync.server.mcp_server import NorthstarMcpServer


class TestMcpServer:
    """Tests for the NorthstarMcpServer class."""

    @pytest.fixture(autouse=True)
    def _server(self, service):
        """Create a server over a real notebook with FastMCP mocked out."""
        # Capture the tool decorator functions when registering
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper

        self.mock_mcp.tool = mock_tool_decorator
        self.service = service
        with patch("northstar_sync.server.mcp_server.FastMCP", return_value=self.mock_mcp), \
                patch("northstar_sync.server.mcp_server.atexit.register"):
            self.server = NorthstarMcpServer(service=service)
        yield

    def call(self, tool_name, /, **kwargs):
        return self.registered_tools[tool_name](**kwargs)

    def test_tools_registered(self):
        """Every notebook and sync tool is exposed."""
        assert set(self.registered_tools) == {
            "ns_create_group",
            "ns_create_note",
            "ns_update_group",
            "ns_update_note",
            "ns_delete",
            "ns_list",
            "ns_search_notes",
            "ns_history",
            "ns_restore",
            "ns_sync_now",
            "ns_sync_status",
        }

    def test_create_and_list(self):
        """Created entities show up in listings."""
        result = self.call("ns_create_group", name="Work")
        assert result.startswith("Group created with ID: 1")
        result = self.call("ns_create_note", title="Plan", group_id=1, content="draft")
        assert result == "Note created with ID: 2"

        listing = self.call("ns_list", table="notes")
        assert "1 notes:" in listing
        assert "Note 2: Plan (group 1) v1, not synced yet" in listing
        assert "Group 1: Work" in self.call("ns_list", table="Groups")
        assert "No notes found." == self.call("ns_list", table="notes", group_id=99)

    def test_create_note_in_missing_group(self):
        """Domain errors are returned as messages."""
        result = self.call("ns_create_note", title="Plan", group_id=99)
        assert result == "Error: Group 99 does not exist or is deleted"

    def test_unknown_table(self):
        """An unknown table is reported, not raised."""
        assert self.call("ns_list", table="tags") == "Error: Unknown entity table: tags"

    def test_oversized_content(self):
        """Content beyond the limit is refused with a reference id."""
        self.call("ns_create_group", name="Work")
        result = self.call("ns_create_note", title="Big", group_id=1, content="x" * 1_000_001)
        assert result.startswith("Error: Invalid input (ref: ")

    def test_update_tools(self):
        """Updates are applied to the right table only."""
        self.call("ns_create_group", name="Work")
        self.call("ns_create_note", title="Plan", group_id=1)

        assert "Group 1: Office" in self.call("ns_update_group", local_id=1, name="Office")
        assert "v2" in self.call("ns_update_note", local_id=2, content="final")
        assert self.call("ns_update_note", local_id=2) == "Nothing to update."
        assert self.call("ns_update_group", local_id=2, name="x") == (
            "Error: Entity 2 is not in groups"
        )
        assert self.call("ns_update_note", local_id=77, title="x") == (
            "Error: Entity with local id 77 not found"
        )

    def test_delete_history_restore(self):
        """A deleted note can be brought back from its history."""
        self.call("ns_create_group", name="Work")
        self.call("ns_create_note", title="Plan", group_id=1)

        assert self.call("ns_delete", local_id=2) == "Entity 2 deleted."
        assert self.call("ns_delete", local_id=2) == "Entity 2 was already deleted."

        history = self.call("ns_history", local_id=2)
        assert "delete at" in history
        assert "create at" in history
        entry_id = self.service.list_history(2)[0].id

        assert self.call("ns_restore", local_id=2, entry_id=entry_id).startswith("Restored: Note 2")
        assert "nothing to restore" in self.call("ns_restore", local_id=2, entry_id=entry_id)

    def test_search(self):
        """Search finds notes by content."""
        self.call("ns_create_group", name="Work")
        self.call("ns_create_note", title="Plan", group_id=1, content="quarterly budget")
        assert "Note 2: Plan" in self.call("ns_search_notes", query="BUDGET")
        assert self.call("ns_search_notes", query="nothing") == "No notes match 'nothing'."

    def test_sync_tools_without_sync(self):
        """Sync tools degrade gracefully while signed out."""
        assert self.call("ns_sync_now") == "Error: Sync is not running; sign in first"
        status = self.call("ns_sync_status")
        assert "# Sync Status" in status
        assert "**Running:** No" in status
        assert "**Operations:**" in status

    def test_sync_now_with_remote(self, fake_remote):
        """A manual sync reports what it pushed."""
        from northstar_sync.models.schema import SyncSession

        self.call("ns_create_group", name="Work")
        self.service.start_sync(SyncSession(owner_id="owner-1"), remote_client=fake_remote)
        result = self.call("ns_sync_now", timeout=10)
        assert result.startswith("Sync complete:")
        assert "0 changes pending" in result

        fake_remote.online = False
        self.call("ns_create_group", name="Home")
        result = self.call("ns_sync_now", timeout=10)
        assert result.startswith("Sync failed:")
        assert "1 changes pending" in result
        status = self.call("ns_sync_status")
        assert "**Last error:**" in status
        assert "**Cycles:**" in status
        assert "**Totals:** pushed 1" in status

    def test_unexpected_errors_are_wrapped(self):
        """Unexpected exceptions never escape a tool."""
        with patch.object(self.service, "get_entity", side_effect=RuntimeError("boom")):
            result = self.call("ns_update_note", local_id=1, title="x")
        assert result.startswith("Error: An unexpected error occurred (ref: ")

    def test_format_error_response(self):
        """Domain errors keep their message."""
        assert self.server.format_error_response(EntityNotFoundError(5)) == (
            "Error: Entity with local id 5 not found"
        )
