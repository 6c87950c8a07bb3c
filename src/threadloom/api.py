"""FastAPI application: REST endpoints plus the server-sent-event reply stream."""

from __future__ import annotations

import logging
from contextlib import aclosing
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .config import SQLITE_PATH
from .errors import (
    Busy,
    InvalidArgument,
    InvariantViolation,
    NotFound,
    ThreadloomError,
)
from .models import Artifact, BranchGroup, Conversation, EditResult, Message, Role
from .service import ChatService
from .storage import ConversationStore
from .streaming import ResponseStream

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    InvalidArgument: 400,
    InvariantViolation: 409,
    Busy: 409,
}

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class CreateConversation(BaseModel):
    title: str | None = None
    model: str | None = None


class SubmitMessage(BaseModel):
    content: str
    role: str = "user"
    parent_id: int | None = None
    system: str | None = None


class Regenerate(BaseModel):
    system: str | None = None


class EditContent(BaseModel):
    content: str


def create_app(service: ChatService | None = None) -> FastAPI:
    """Build the HTTP app around ``service`` (a SQLite-backed one by default)."""
    if service is None:
        service = ChatService(ConversationStore(SQLITE_PATH))

    app = FastAPI(title="threadloom", version=__version__)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ThreadloomError)
    async def handle_threadloom_error(request: Request, exc: ThreadloomError):
        status = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "producer": service.producer.model_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ===== CONVERSATIONS =====

    @app.post("/api/conversations", status_code=201)
    async def create_conversation(body: CreateConversation) -> Conversation:
        return service.create_conversation(title=body.title, model=body.model)

    @app.get("/api/conversations")
    async def list_conversations(limit: int = 20, offset: int = 0) -> list[Conversation]:
        return service.list_conversations(limit=limit, offset=offset)

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: int) -> Conversation:
        return service.get_conversation(conversation_id)

    @app.get("/api/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: int) -> list[Message]:
        return service.list_messages(conversation_id)

    @app.get("/api/conversations/{conversation_id}/path")
    async def get_path(conversation_id: int, leaf_id: int | None = None) -> list[Message]:
        return service.transcript(conversation_id, leaf_id)

    @app.post("/api/conversations/{conversation_id}/messages")
    async def submit_message(conversation_id: int, body: SubmitMessage):
        """Append a user message and stream the reply as server-sent events."""
        if body.role != Role.USER.value:
            raise InvalidArgument("Only user messages can be submitted")
        user_message, stream = await service.submit_message(
            conversation_id, body.content, parent_id=body.parent_id, system=body.system
        )
        headers = {**SSE_HEADERS, "X-User-Message-Id": str(user_message.id)}
        return StreamingResponse(_sse(stream), media_type="text/event-stream", headers=headers)

    @app.post("/api/conversations/{conversation_id}/cancel")
    async def cancel_stream(conversation_id: int):
        service.get_conversation(conversation_id)
        return {"cancelled": service.cancel(conversation_id)}

    @app.get("/api/conversations/{conversation_id}/branches")
    async def list_branches(conversation_id: int) -> dict[str, list[BranchGroup]]:
        return {"branches": service.list_branches(conversation_id)}

    @app.get("/api/conversations/{conversation_id}/artifacts")
    async def conversation_artifacts(conversation_id: int) -> list[Artifact]:
        return service.artifacts_for_conversation(conversation_id)

    # ===== MESSAGES =====

    @app.put("/api/messages/{message_id}")
    async def edit_message(message_id: int, body: EditContent) -> EditResult:
        return service.edit_message(message_id, body.content)

    @app.post("/api/messages/{message_id}/regenerate")
    async def regenerate(message_id: int, body: Regenerate | None = None):
        """Stream a fresh reply to a user message (e.g. one created by a branching edit)."""
        stream = await service.respond_to(message_id, system=body.system if body else None)
        return StreamingResponse(_sse(stream), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/messages/{message_id}/artifacts")
    async def message_artifacts(message_id: int) -> list[Artifact]:
        return service.artifacts_for_message(message_id)

    # ===== ARTIFACTS =====

    @app.get("/api/artifacts/{artifact_id}")
    async def get_artifact(artifact_id: int) -> Artifact:
        return service.get_artifact(artifact_id)

    @app.get("/api/artifacts/{artifact_id}/versions")
    async def artifact_versions(artifact_id: int) -> list[Artifact]:
        return service.get_artifact_versions(artifact_id)

    @app.put("/api/artifacts/{artifact_id}")
    async def edit_artifact(artifact_id: int, body: EditContent) -> Artifact:
        return service.edit_artifact(artifact_id, body.content)

    return app


async def _sse(stream: ResponseStream) -> AsyncIterator[str]:
    async with aclosing(stream.events()) as events:
        async for event in events:
            yield event.to_sse()
