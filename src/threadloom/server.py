"""FastMCP server exposing the conversation tree and artifact history as tools."""

from __future__ import annotations

import logging
import sys

from mcp.server.fastmcp import FastMCP

from .artifacts import ArtifactVersioner
from .branching import BranchManager
from .config import LOG_FORMAT, LOG_LEVEL, SQLITE_PATH
from .errors import ThreadloomError
from .models import Message
from .storage import ConversationStore

# Logging to stderr only: stdout is the MCP JSON-RPC transport
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, stream=sys.stderr)

mcp = FastMCP(
    "threadloom",
    instructions=(
        "Browse and edit branching chat conversations and their artifacts. "
        "Use list_conversations to find a conversation, get_conversation to read "
        "the current path, list_branches to see where it diverged, and "
        "get_artifact_versions to inspect an artifact's history. "
        "edit_message and edit_artifact never overwrite history that has replies "
        "or earlier versions."
    ),
)

# Singleton store, reused across tool calls
_store: ConversationStore | None = None


def _get_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = ConversationStore(SQLITE_PATH)
    return _store


def _preview(text: str, limit: int = 100) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


def _render_message(msg: Message) -> str:
    role = "**User**" if msg.role == "user" else "**Assistant**"
    notes = [f"#{msg.id}"]
    if msg.edited_at:
        notes.append("edited")
    if msg.finish_reason in ("aborted", "failed"):
        notes.append(msg.finish_reason)
    return f"{role} ({', '.join(notes)}):\n{msg.content}\n"


@mcp.tool()
def list_conversations(limit: int = 20, offset: int = 0) -> str:
    """Browse conversations, most recently updated first.

    Args:
        limit: Maximum results (default 20)
        offset: Skip this many results (for pagination)
    """
    conversations = _get_store().list_conversations(limit=limit, offset=offset)
    if not conversations:
        return "No conversations found."

    lines = [f"Conversations (showing {offset + 1}–{offset + len(conversations)}):\n"]
    for i, c in enumerate(conversations, offset + 1):
        lines.append(f"{i}. **{c.title}** ({c.updated_at[:10]})")
        lines.append(f"   ID: `{c.id}` | {c.message_count} msgs | Model: {c.model}")

    if len(conversations) == limit:
        lines.append(f"\nMore available — use offset={offset + limit} to see the next page.")
    return "\n".join(lines)


@mcp.tool()
def get_conversation(conversation_id: int, leaf_id: int | None = None) -> str:
    """Read a conversation along one path of its message tree.

    Args:
        conversation_id: The conversation ID
        leaf_id: Optional message to end the path at; defaults to the newest message
    """
    store = _get_store()
    try:
        conv = store.get_conversation(conversation_id)
        path = BranchManager(store).active_path(conversation_id, leaf_id)
    except ThreadloomError as e:
        return str(e)

    lines = [
        f"# {conv.title}",
        f"Model: {conv.model}",
        f"Messages: {conv.message_count} (showing {len(path)} on this path)",
        "",
        "---",
        "",
    ]
    lines.extend(_render_message(m) for m in path)
    return "\n".join(lines)


@mcp.tool()
def list_branches(conversation_id: int) -> str:
    """List the points where a conversation diverged into alternative messages.

    Args:
        conversation_id: The conversation ID
    """
    try:
        groups = BranchManager(_get_store()).branches_for(conversation_id)
    except ThreadloomError as e:
        return str(e)

    if not groups:
        return f"Conversation {conversation_id} has no branches."

    lines = [f"{len(groups)} branch point(s):\n"]
    for group in groups:
        parent = f"message #{group.parent_id}" if group.parent_id is not None else "the start"
        lines.append(f"After {parent}:")
        for sibling in group.siblings:
            lines.append(f"  - #{sibling.id} [{sibling.role.value}] {_preview(sibling.content)}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool()
def edit_message(message_id: int, content: str) -> str:
    """Edit a message. Messages with replies are kept and a new branch is created instead.

    Args:
        message_id: The message to edit
        content: The new message text
    """
    try:
        result = BranchManager(_get_store()).edit_message(message_id, content)
    except ThreadloomError as e:
        return f"Edit failed: {e}"

    if result.branched:
        return (
            f"Message #{result.prior_id} has replies, so the edit was saved as a new "
            f"branch: message #{result.message.id}."
        )
    return f"Message #{result.message.id} updated in place."


@mcp.tool()
def get_artifact_versions(artifact_id: int) -> str:
    """Show every version of an artifact, oldest first.

    Args:
        artifact_id: Any version's artifact ID
    """
    try:
        versions = ArtifactVersioner(_get_store()).versions_of(artifact_id)
    except ThreadloomError as e:
        return str(e)

    current = versions[-1]
    lines = [
        f"# {current.title or current.identifier}",
        f"Identifier: `{current.identifier}` | Type: {current.type.value} | "
        f"Language: {current.language or '?'} | Versions: {len(versions)}",
        "",
    ]
    for artifact in versions:
        lines.append(f"## Version {artifact.version} (ID {artifact.id}, {artifact.created_at[:19]})")
        lines.append(f"```{artifact.language or ''}\n{artifact.content}\n```")
        lines.append("")
    return "\n".join(lines)


@mcp.tool()
def edit_artifact(artifact_id: int, content: str) -> str:
    """Save new content for an artifact as its next version.

    Args:
        artifact_id: Any version's artifact ID
        content: The full new artifact content
    """
    try:
        artifact = ArtifactVersioner(_get_store()).create_version(artifact_id, content)
    except ThreadloomError as e:
        return f"Edit failed: {e}"
    return (
        f"Saved version {artifact.version} of `{artifact.identifier}` "
        f"(artifact ID {artifact.id})."
    )
