"""Shared helpers for building message trees and draining streams."""

from __future__ import annotations

from threadloom.models import Message, StreamEvent
from threadloom.storage import ConversationStore
from threadloom.streaming import ResponseStream


async def collect(stream: ResponseStream) -> list[StreamEvent]:
    return [event async for event in stream.events()]


def build_thread(store: ConversationStore, conversation_id: int, *contents: str) -> list[Message]:
    """Append alternating user/assistant messages, each a child of the previous one."""
    messages = []
    parent_id = None
    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        msg = store.append(conversation_id, role, content, parent_id=parent_id)
        messages.append(msg)
        parent_id = msg.id
    return messages
