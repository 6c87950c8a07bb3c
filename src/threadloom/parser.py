"""Parse ChatGPT export conversations.json trees, keeping every branch."""

from __future__ import annotations

import logging
from typing import Any

from .models import ExportConversation, ExportNode

logger = logging.getLogger(__name__)


def _extract_text(parts: list[Any]) -> str:
    """Extract text from message content parts, filtering non-strings."""
    return "\n".join(part for part in parts if isinstance(part, str)).strip()


def _message_of(node: dict[str, Any]) -> tuple[str, str, float | None] | None:
    """Return (role, text, timestamp) for user/assistant text nodes, None otherwise."""
    msg_data = node.get("message")
    if msg_data is None:
        return None

    role = msg_data.get("author", {}).get("role", "")
    if role not in ("user", "assistant"):
        return None

    text = _extract_text(msg_data.get("content", {}).get("parts", []))
    if not text:
        return None
    return role, text, msg_data.get("create_time")


def _kept_parent(mapping: dict[str, Any], node_id: str, kept: set[str]) -> str | None:
    """Walk parent pointers past skipped nodes to the nearest kept ancestor."""
    visited: set[str] = {node_id}
    parent = mapping[node_id].get("parent")

    while parent and parent in mapping:
        if parent in visited:
            logger.warning("Circular reference detected at node %s", parent)
            return None
        if parent in kept:
            return parent
        visited.add(parent)
        parent = mapping[parent].get("parent")
    return None


def parse_conversation(conv: dict[str, Any]) -> ExportConversation | None:
    """Parse a single ChatGPT conversation dict, with all of its edit branches.

    System, tool and empty nodes are dropped; their children hang off the
    nearest kept ancestor instead. Returns None if nothing usable remains.
    """
    conv_id = conv.get("id") or conv.get("conversation_id")
    title = conv.get("title") or "Untitled"
    mapping = conv.get("mapping")

    if not conv_id or not mapping:
        logger.warning("Skipping conversation with missing id or mapping")
        return None

    messages = {nid: m for nid, node in mapping.items() if (m := _message_of(node))}
    if not messages:
        logger.debug("Conversation '%s' has no extractable messages, skipping", title)
        return None

    kept = set(messages)
    parents = {nid: _kept_parent(mapping, nid, kept) for nid in kept}

    depth: dict[str, int] = {}
    for nid in kept:
        chain: list[str] = []
        current: str | None = nid
        while current is not None and current not in depth and current not in chain:
            chain.append(current)
            current = parents[current]
        base = depth.get(current, -1) if current is not None else -1
        for offset, node_id in enumerate(reversed(chain), 1):
            depth[node_id] = base + offset

    model_slug: str | None = None
    nodes: list[ExportNode] = []
    for nid in sorted(kept, key=lambda n: (depth[n], messages[n][2] or 0.0, n)):
        role, text, timestamp = messages[nid]
        if role == "assistant" and model_slug is None:
            model_slug = mapping[nid]["message"].get("metadata", {}).get("model_slug")
        nodes.append(ExportNode(
            node_id=nid,
            parent_node_id=parents[nid],
            role=role,
            content=text,
            timestamp=timestamp,
        ))

    return ExportConversation(
        source_id=conv_id,
        title=title,
        create_time=conv.get("create_time"),
        model_slug=model_slug,
        nodes=nodes,
    )


def parse_conversations(data: list[dict[str, Any]]) -> list[ExportConversation]:
    """Parse a full conversations.json array into a list of ExportConversations."""
    conversations: list[ExportConversation] = []

    for conv_dict in data:
        try:
            conv = parse_conversation(conv_dict)
            if conv is not None:
                conversations.append(conv)
        except Exception:
            title = conv_dict.get("title", "unknown")
            logger.warning("Failed to parse conversation '%s'", title, exc_info=True)

    return conversations
