"""Chat service: wires the store, branch manager, versioner and response streams together."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from .artifacts import ArtifactExtractor, ArtifactVersioner
from .branching import BranchManager
from .config import SUPERSEDE_TIMEOUT
from .errors import Busy, InvalidArgument
from .models import Artifact, BranchGroup, Conversation, EditResult, Message, Role
from .producers import ResponseProducer, build_producer
from .storage import ConversationStore
from .streaming import ResponseStream

logger = logging.getLogger(__name__)


class ChatService:
    """Entry point used by the HTTP API, the MCP tools and the CLI.

    At most one response stream per conversation is live; starting another
    cancels the previous one and waits for it to settle.
    """

    def __init__(
        self,
        store: ConversationStore,
        producer: ResponseProducer | None = None,
        extractor: ArtifactExtractor | None = None,
        supersede_timeout: float = SUPERSEDE_TIMEOUT,
    ):
        self.store = store
        self.producer = producer or build_producer()
        self.extractor = extractor or ArtifactExtractor()
        self.branches = BranchManager(store)
        self.versioner = ArtifactVersioner(store)
        self.supersede_timeout = supersede_timeout
        self._active: dict[int, ResponseStream] = {}
        self._claim_locks: dict[int, list] = {}  # id -> [Lock, waiters]

    # -- conversations & messages -----------------------------------------

    def create_conversation(self, title: str | None = None, model: str | None = None) -> Conversation:
        return self.store.create_conversation(title=title, model=model)

    def get_conversation(self, conversation_id: int) -> Conversation:
        return self.store.get_conversation(conversation_id)

    def list_conversations(self, limit: int = 20, offset: int = 0) -> list[Conversation]:
        return self.store.list_conversations(limit=limit, offset=offset)

    def list_messages(self, conversation_id: int) -> list[Message]:
        return self.store.list_by_conversation(conversation_id)

    def transcript(self, conversation_id: int, leaf_id: int | None = None) -> list[Message]:
        return self.branches.active_path(conversation_id, leaf_id)

    # -- streaming ----------------------------------------------------------

    async def submit_message(
        self,
        conversation_id: int,
        content: str,
        parent_id: int | None = None,
        system: str | None = None,
    ) -> tuple[Message, ResponseStream]:
        """Append a user message and return the stream that will answer it.

        Without ``parent_id`` the message continues from the most recently
        created message of the conversation.
        """
        self.store.get_conversation(conversation_id)
        if not content or not content.strip():
            raise InvalidArgument("Message content must not be empty")

        async with self._claim(conversation_id):
            await self._supersede(conversation_id)
            if parent_id is None:
                latest = self.store.latest_message(conversation_id)
                parent_id = latest.id if latest else None
            user_message = self.store.append(conversation_id, Role.USER, content, parent_id=parent_id)
            return user_message, self._start(user_message, system)

    async def respond_to(self, message_id: int, system: str | None = None) -> ResponseStream:
        """Start a new reply to an existing user message, e.g. after a branching edit."""
        message = self.store.get(message_id)
        if message.role is not Role.USER:
            raise InvalidArgument(f"Message {message_id} is not a user message")

        async with self._claim(message.conversation_id):
            await self._supersede(message.conversation_id)
            return self._start(message, system)

    def cancel(self, conversation_id: int) -> bool:
        """Cancel the live stream of a conversation; False if nothing was running."""
        stream = self._active.get(conversation_id)
        if stream is None or stream.finished:
            return False
        stream.cancel()
        return True

    def active_stream(self, conversation_id: int) -> ResponseStream | None:
        stream = self._active.get(conversation_id)
        return stream if stream is not None and not stream.finished else None

    @asynccontextmanager
    async def _claim(self, conversation_id: int):
        entry = self._claim_locks.setdefault(conversation_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._claim_locks[conversation_id]

    async def _supersede(self, conversation_id: int):
        current = self._active.get(conversation_id)
        if current is None or current.finished:
            return
        logger.info("Superseding live stream in conversation %d", conversation_id)
        current.cancel()
        try:
            await asyncio.wait_for(current.wait_closed(), timeout=self.supersede_timeout)
        except asyncio.TimeoutError:
            raise Busy(
                f"Conversation {conversation_id} still has a response in progress"
            ) from None

    def _start(self, user_message: Message, system: str | None) -> ResponseStream:
        stream = ResponseStream(
            self.store,
            self.producer,
            user_message,
            system=system,
            extractor=self.extractor,
            versioner=self.versioner,
            on_close=self._release,
        )
        self._active[user_message.conversation_id] = stream
        return stream

    def _release(self, stream: ResponseStream):
        if self._active.get(stream.conversation_id) is stream:
            del self._active[stream.conversation_id]

    # -- branching ------------------------------------------------------------

    def edit_message(self, message_id: int, new_content: str) -> EditResult:
        """Edit or branch a message; the prompt of a live reply cannot be edited."""
        message = self.store.get(message_id)
        stream = self.active_stream(message.conversation_id)
        if stream is not None and stream.user_message.id == message_id:
            raise Busy(
                f"Message {message_id} is still being answered; cancel the reply first"
            )
        return self.branches.edit_message(message_id, new_content)

    def list_branches(self, conversation_id: int) -> list[BranchGroup]:
        return self.branches.branches_for(conversation_id)

    # -- artifacts ------------------------------------------------------------

    def get_artifact(self, artifact_id: int) -> Artifact:
        return self.store.get_artifact(artifact_id)

    def get_artifact_versions(self, artifact_id: int) -> list[Artifact]:
        return self.versioner.versions_of(artifact_id)

    def edit_artifact(self, artifact_id: int, new_content: str) -> Artifact:
        return self.versioner.create_version(artifact_id, new_content)

    def artifacts_for_message(self, message_id: int) -> list[Artifact]:
        self.store.get(message_id)
        return self.store.artifacts_for_message(message_id)

    def artifacts_for_conversation(self, conversation_id: int) -> list[Artifact]:
        self.store.get_conversation(conversation_id)
        return self.store.artifacts_for_conversation(conversation_id)
