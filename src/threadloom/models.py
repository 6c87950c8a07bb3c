"""Data models for conversations, the message tree and artifacts."""

from __future__ import annotations

import json
from enum import Enum

from pydantic import BaseModel, Field

from .config import DEFAULT_TITLE


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(BaseModel):
    id: int
    title: str = DEFAULT_TITLE
    model: str
    created_at: str
    updated_at: str
    last_message_at: str | None = None
    message_count: int = 0
    token_count: int = 0


class Message(BaseModel):
    id: int
    conversation_id: int
    role: Role
    content: str
    parent_message_id: int | None = None
    created_at: str
    edited_at: str | None = None
    tokens: int | None = None
    finish_reason: str | None = None


class BranchGroup(BaseModel):
    """Messages sharing one parent; more than one member means the thread diverged here."""

    parent_id: int | None
    siblings: list[Message] = []


class EditResult(BaseModel):
    branched: bool
    message: Message
    prior_id: int | None = None


class ArtifactType(str, Enum):
    CODE = "code"
    MARKUP = "markup"
    VECTOR_GRAPHIC = "vector-graphic"
    DIAGRAM = "diagram"
    DOCUMENT = "document"
    COMPONENT = "component"
    OTHER = "other"


class ArtifactCandidate(BaseModel):
    """An artifact before it has a version; unset fields are carried from the previous version."""

    content: str
    type: ArtifactType | None = None
    language: str | None = None
    title: str | None = None
    identifier: str | None = None


class Artifact(BaseModel):
    id: int
    message_id: int
    conversation_id: int
    type: ArtifactType
    title: str | None = None
    identifier: str
    language: str | None = None
    content: str
    version: int = Field(ge=1)
    created_at: str
    updated_at: str


class StreamEvent(BaseModel):
    """One event on the response stream, serialized as a server-sent event."""

    type: str  # content | done | aborted | error
    text: str | None = None
    message_id: int | None = None
    artifacts: list[Artifact] | None = None
    tokens: int | None = None
    error: str | None = None
    kind: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type != "content"

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.model_dump(mode='json', exclude_none=True))}\n\n"


class ExportNode(BaseModel):
    """One user/assistant message from a ChatGPT export, parent resolved to a kept node."""

    node_id: str
    parent_node_id: str | None = None
    role: Role
    content: str
    timestamp: float | None = None


class ExportConversation(BaseModel):
    source_id: str
    title: str
    create_time: float | None = None
    model_slug: str | None = None
    nodes: list[ExportNode] = []  # parents before children
