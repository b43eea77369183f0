"""MCP server exposing the notebook and its sync controls as tools."""

import atexit
import json
import logging
import uuid
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from northstar_sync.config import config
from northstar_sync.exceptions import NorthstarError
from northstar_sync.models.schema import (
    Entity,
    EntityTable,
    Group,
    HistoryEntry,
    Note,
    SyncSession,
)
from northstar_sync.observability import metrics, timed_operation
from northstar_sync.services.notebook_service import NotebookService

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_content_length(content: Optional[str]) -> None:
    """Validate input string lengths at the MCP boundary."""
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _describe(entity: Entity) -> str:
    sync_state = f"remote {entity.remote_id}" if entity.remote_id else "not synced yet"
    deleted = " [deleted]" if entity.is_deleted else ""
    if isinstance(entity, Group):
        return (
            f"Group {entity.local_id}: {entity.name} ({entity.color}) "
            f"v{entity.version}, {sync_state}{deleted}"
        )
    if isinstance(entity, Note):
        return (
            f"Note {entity.local_id}: {entity.title} (group {entity.group_id}) "
            f"v{entity.version}, {sync_state}{deleted}"
        )
    return f"Entity {entity.local_id}"


def _format_history(entries: List[HistoryEntry]) -> str:
    lines = []
    for entry in entries:
        lines.append(
            f"- #{entry.id} {entry.operation.value} at {entry.changed_at.isoformat()}: "
            f"{json.dumps(entry.data, ensure_ascii=False)}"
        )
    return "\n".join(lines)


class NorthstarMcpServer:
    """MCP server for the Northstar notebook."""

    def __init__(self, service: Optional[NotebookService] = None, engine=None):
        """Initialize the MCP server.

        Args:
            service: Notebook service to expose. Created if None.
            engine: Pre-configured SQLAlchemy engine for a new service's store.
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        if service is None:
            from northstar_sync.storage.local_store import LocalStore

            service = NotebookService(store=LocalStore(engine=engine))
        self.service = service
        self.initialize()
        # Register shutdown hook for resource cleanup
        atexit.register(self._shutdown)
        self._register_tools()

    def initialize(self) -> None:
        """Start background sync when the configuration enables it."""
        if config.sync_enabled and config.owner_id:
            session = SyncSession(owner_id=config.owner_id, access_token=config.access_token)
            try:
                self.service.start_sync(session)
            except NorthstarError as e:
                # The notebook stays usable offline
                logger.error(f"Could not start background sync: {e}")
        logger.info("Northstar MCP server initialized")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.stop_sync()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NorthstarError):
            # Structured domain errors - use the error code and message
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            # Unexpected errors - log with full stack trace but return generic message
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="ns_create_group")
        def ns_create_group(name: str, color: Optional[str] = None) -> str:
            """Create a group of notes.
            Args:
                name: Group name (1-100 characters)
                color: Color as #rrggbb; the next free palette color if omitted
            """
            with timed_operation("ns_create_group", name=name[:30]) as op:
                try:
                    group = self.service.create_group(name, color)
                    op["local_id"] = group.local_id
                    return f"Group created with ID: {group.local_id} (color {group.color})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_create_note")
        def ns_create_note(title: str, group_id: int, content: str = "") -> str:
            """Create a note in a group.
            Args:
                title: Note title (1-200 characters)
                group_id: Local ID of an existing group
                content: Note body
            """
            with timed_operation("ns_create_note", title=title[:30]) as op:
                try:
                    _validate_content_length(content)
                    note = self.service.create_note(title, content, group_id)
                    op["local_id"] = note.local_id
                    return f"Note created with ID: {note.local_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_update_group")
        def ns_update_group(
            local_id: int, name: Optional[str] = None, color: Optional[str] = None
        ) -> str:
            """Rename or recolor a group.
            Args:
                local_id: Local ID of the group
                name: New name (optional)
                color: New color as #rrggbb (optional)
            """
            with timed_operation("ns_update_group", local_id=local_id):
                try:
                    changes = {k: v for k, v in (("name", name), ("color", color)) if v is not None}
                    return self._update(local_id, changes, EntityTable.GROUPS)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_update_note")
        def ns_update_note(
            local_id: int,
            title: Optional[str] = None,
            content: Optional[str] = None,
            group_id: Optional[int] = None,
        ) -> str:
            """Edit a note or move it to another group.
            Args:
                local_id: Local ID of the note
                title: New title (optional)
                content: New content (optional)
                group_id: Local ID of the group to move the note to (optional)
            """
            with timed_operation("ns_update_note", local_id=local_id):
                try:
                    _validate_content_length(content)
                    changes = {
                        k: v
                        for k, v in (("title", title), ("content", content), ("group_id", group_id))
                        if v is not None
                    }
                    return self._update(local_id, changes, EntityTable.NOTES)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_delete")
        def ns_delete(local_id: int) -> str:
            """Delete a note or group (recoverable through ns_history / ns_restore).
            Args:
                local_id: Local ID of the note or group
            """
            with timed_operation("ns_delete", local_id=local_id) as op:
                try:
                    deleted = self.service.soft_delete_entity(local_id)
                    op["deleted"] = deleted
                    if not deleted:
                        return f"Entity {local_id} was already deleted."
                    return f"Entity {local_id} deleted."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_list")
        def ns_list(
            table: str = "notes",
            group_id: Optional[int] = None,
            include_deleted: bool = False,
        ) -> str:
            """List groups or notes.
            Args:
                table: "groups" or "notes"
                group_id: Only notes of this group (notes only)
                include_deleted: Include soft-deleted entities
            """
            with timed_operation("ns_list", table=table) as op:
                try:
                    repository = self.service.repository_for(table.lower().strip())
                    if group_id is not None and repository.table == EntityTable.NOTES:
                        entities = self.service.notes_in_group(group_id)
                    else:
                        entities = repository.get_all(include_deleted=include_deleted)
                    op["result_count"] = len(entities)
                    if not entities:
                        return f"No {repository.table.value} found."
                    lines = [f"{len(entities)} {repository.table.value}:"]
                    lines.extend(f"- {_describe(e)}" for e in entities)
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_search_notes")
        def ns_search_notes(query: str, limit: int = 20) -> str:
            """Search note titles and contents (case-insensitive).
            Args:
                query: Text to look for
                limit: Maximum number of results
            """
            with timed_operation("ns_search_notes", query=query[:30]) as op:
                try:
                    notes = self.service.search_notes(query, limit=limit)
                    op["result_count"] = len(notes)
                    if not notes:
                        return f"No notes match '{query}'."
                    return "\n".join(f"- {_describe(n)}" for n in notes)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_history")
        def ns_history(local_id: int, limit: int = 20) -> str:
            """Show the saved snapshots of a note or group, most recent first.
            Args:
                local_id: Local ID of the note or group
                limit: Maximum number of entries
            """
            with timed_operation("ns_history", local_id=local_id) as op:
                try:
                    entries = self.service.list_history(local_id, limit=limit)
                    op["result_count"] = len(entries)
                    if not entries:
                        return f"No history for entity {local_id}."
                    return f"History of entity {local_id}:\n" + _format_history(entries)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_restore")
        def ns_restore(local_id: int, entry_id: int) -> str:
            """Restore a note or group to a history snapshot.
            Args:
                local_id: Local ID of the note or group
                entry_id: History entry ID (see ns_history)
            """
            with timed_operation("ns_restore", local_id=local_id) as op:
                try:
                    result = self.service.restore(local_id, entry_id)
                    op["applied"] = result.applied
                    if not result.applied:
                        return f"Entity {local_id} already matches entry #{entry_id}; nothing to restore."
                    return f"Restored: {_describe(result.entity)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_sync_now")
        def ns_sync_now(timeout: float = 60.0) -> str:
            """Run a sync cycle now and wait for it to finish.
            Args:
                timeout: Seconds to wait for the cycle
            """
            with timed_operation("ns_sync_now") as op:
                try:
                    status = self.service.sync_now(timeout=timeout)
                    op["state"] = status["state"]
                    if not status["completed"]:
                        return f"Sync still running after {timeout:.0f}s (state: {status['state']})."
                    if status["state"] == "backing_off":
                        return (
                            f"Sync failed: {status['last_error']}. "
                            f"Retrying at {status['next_retry_at']}; "
                            f"{status['pending']} changes pending."
                        )
                    result = status.get("last_result") or {}
                    return (
                        f"Sync complete: pushed {result.get('pushed', 0)}, "
                        f"pulled {result.get('pulled', 0)}, "
                        f"{status['pending']} changes pending."
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ns_sync_status")
        def ns_sync_status() -> str:
            """Show the state of background sync."""
            with timed_operation("ns_sync_status"):
                try:
                    status = self.service.sync_status()
                    output = "# Sync Status\n\n"
                    output += f"**Running:** {'Yes' if status['running'] else 'No'}\n"
                    output += f"**State:** {status['state']}\n"
                    output += f"**Pending changes:** {status['pending']}\n"
                    output += f"**Last success:** {status['last_success_at'] or 'never'}\n"
                    if status["last_error"]:
                        output += f"**Last error:** {status['last_error']} ({status['last_error_at']})\n"
                        output += f"**Consecutive failures:** {status['consecutive_failures']}\n"
                    if status["next_retry_at"]:
                        output += f"**Next retry:** {status['next_retry_at']}\n"
                    if status["entity_failures"]:
                        output += "**Rejected changes:**\n"
                        for local_id, error in status["entity_failures"].items():
                            output += f"  - {local_id}: {error}\n"
                    summary = metrics.get_summary()
                    totals = summary["sync"]
                    output += f"\n**Cycles:** {totals['cycles']} "
                    output += f"({totals['failed_cycles']} failed, last {totals['last_cycle_ms']}ms)\n"
                    output += (
                        f"**Totals:** pushed {totals['pushed']}, pulled {totals['pulled']}, "
                        f"rejected {totals['rejected']}, conflicts {totals['conflicts']}\n"
                    )
                    output += f"**Operations:** {summary['total_operations']} "
                    output += f"({summary['overall_success_rate']:.1%} ok)\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def _update(self, local_id: int, changes: dict, table: EntityTable) -> str:
        entity = self.service.get_entity(local_id)
        if entity.table != table:
            return f"Error: Entity {local_id} is not in {table.value}"
        if not changes:
            return "Nothing to update."
        if not self.service.update_entity(local_id, changes):
            return f"Entity {local_id} is deleted; restore it first."
        return f"Updated: {_describe(self.service.get_entity(local_id))}"

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
