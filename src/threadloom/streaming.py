"""Per-request controller that streams a reply, then persists it and its artifacts.

Each request walks one path through::

    idle -> requesting -> streaming -> completed | aborted | failed

Chunks are forwarded in the order the producer yields them. Exactly one
terminal event ends every stream. Partial text survives aborts and failures,
but only completed replies are scanned for artifacts.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import AsyncIterator, Callable

from .artifacts import ArtifactExtractor, ArtifactVersioner
from .config import CHARS_PER_TOKEN, DEFAULT_TITLE, TITLE_MAX_CHARS
from .errors import CollaboratorFailure, FailureKind
from .models import Artifact, Message, StreamEvent
from .producers import ResponseProducer, StreamChunk
from .storage import ConversationStore

logger = logging.getLogger(__name__)

_CANCELLED = object()
_END = object()

# Leading filler stripped when deriving a title from the first user message
TITLE_PREFIX = re.compile(
    r"^(can you|could you|please|help me|i need|i want to|how do i|how to|"
    r"what is|what are|tell me|explain|show me)\s+",
    re.IGNORECASE,
)


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED}


def title_from_message(content: str) -> str:
    """Derive a short conversation title from the first user message."""
    title = TITLE_PREFIX.sub("", content.strip()).strip()
    title = title[:1].upper() + title[1:]
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS - 3] + "..."
    if len(title) < 3:
        title = "New Chat"
    return title


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


class ResponseStream:
    """Streams one assistant reply to ``user_message``.

    Iterate :meth:`events` to drive the stream; call :meth:`cancel` from any
    coroutine to stop it. The accumulated text is private to this instance
    until the terminal transition writes it to the store.
    """

    def __init__(
        self,
        store: ConversationStore,
        producer: ResponseProducer,
        user_message: Message,
        system: str | None = None,
        extractor: ArtifactExtractor | None = None,
        versioner: ArtifactVersioner | None = None,
        on_close: Callable[[ResponseStream], None] | None = None,
    ):
        self.store = store
        self.producer = producer
        self.user_message = user_message
        self.conversation_id = user_message.conversation_id
        self.system = system
        self.extractor = extractor or ArtifactExtractor()
        self.versioner = versioner or ArtifactVersioner(store)
        self.on_close = on_close

        self.state = StreamState.IDLE
        self.message: Message | None = None
        self.artifacts: list[Artifact] = []
        self.error: CollaboratorFailure | None = None

        self._buffer: list[str] = []
        self._cancel = asyncio.Event()
        self._closed = asyncio.Event()
        self._started = False
        self._finalizing = False

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self):
        """Ask the stream to stop; it aborts before forwarding another chunk."""
        if self.finished:
            return
        self._cancel.set()
        if not self._started:
            self._abort()
            self._close()

    async def wait_closed(self):
        await self._closed.wait()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Drive the state machine, yielding content events then one terminal event."""
        if self._started:
            raise RuntimeError("Response stream can only be consumed once")
        self._started = True

        if self.finished:
            yield StreamEvent(type="aborted")
            return

        chunks = None
        try:
            self._transition(StreamState.REQUESTING)
            chunks = self.producer.stream(self._history(), self.system)

            while True:
                item = await self._next_chunk(chunks)
                if item is _CANCELLED:
                    event = self._abort()
                    break
                if item is _END:
                    event = self._complete(None)
                    break
                if item.text:
                    if self.state is StreamState.REQUESTING:
                        self._transition(StreamState.STREAMING)
                    self._buffer.append(item.text)
                    yield StreamEvent(type="content", text=item.text)
                if item.is_final:
                    # Final chunks may still carry text; it is forwarded above
                    event = self._complete(item.usage)
                    break

        except CollaboratorFailure as e:
            event = self._fail(e)
        except Exception as e:
            if self._finalizing:
                raise
            logger.exception("Response producer raised an unclassified error")
            event = self._fail(CollaboratorFailure(FailureKind.NETWORK, str(e)))
        finally:
            if chunks is not None:
                await chunks.aclose()
            if not self.finished and not self._finalizing:
                # Consumer went away or the task was cancelled mid-stream
                self._abort()
            self._close()

        yield event

    async def _next_chunk(self, chunks: AsyncIterator[StreamChunk]):
        """Wait for the next chunk or a cancel request, whichever comes first."""
        if self._cancel.is_set():
            return _CANCELLED

        next_task = asyncio.ensure_future(_pull(chunks))
        cancel_task = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()

        if self._cancel.is_set():
            next_task.cancel()
            # Let the producer unwind before it is closed
            await asyncio.gather(next_task, return_exceptions=True)
            return _CANCELLED
        return next_task.result()

    def _history(self) -> list[dict[str, str]]:
        return [
            {"role": m.role.value, "content": m.content}
            for m in self.store.ancestors(self.user_message.id)
        ]

    def _complete(self, usage: dict[str, int] | None) -> StreamEvent:
        self._finalizing = True
        text = "".join(self._buffer)
        if not text.strip():
            return self._fail(CollaboratorFailure(FailureKind.INVALID, "Producer returned an empty response"))

        if usage:
            tokens = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
        else:
            tokens = estimate_tokens(self.user_message.content) + estimate_tokens(text)

        self.message = self.store.append(
            self.conversation_id,
            "assistant",
            text,
            parent_id=self.user_message.id,
            tokens=tokens,
            finish_reason=StreamState.COMPLETED.value,
        )
        for candidate in self.extractor.extract(text, sequence=self.message.id):
            self.artifacts.append(
                self.versioner.reconcile(self.conversation_id, self.message.id, candidate)
            )
        self._maybe_set_title()
        self._transition(StreamState.COMPLETED)

        logger.info(
            "Completed reply %d in conversation %d (%d artifacts)",
            self.message.id, self.conversation_id, len(self.artifacts),
        )
        return StreamEvent(
            type="done",
            message_id=self.message.id,
            artifacts=self.artifacts,
            tokens=tokens,
        )

    def _abort(self) -> StreamEvent:
        self._finalizing = True
        self._persist_partial(StreamState.ABORTED)
        self._transition(StreamState.ABORTED)
        logger.info("Aborted reply in conversation %d", self.conversation_id)
        return StreamEvent(
            type="aborted",
            message_id=self.message.id if self.message else None,
        )

    def _fail(self, error: CollaboratorFailure) -> StreamEvent:
        self._finalizing = True
        self.error = error
        self._persist_partial(StreamState.FAILED)
        self._transition(StreamState.FAILED)
        logger.warning(
            "Reply in conversation %d failed (%s): %s",
            self.conversation_id, error.kind.value, error,
        )
        return StreamEvent(
            type="error",
            error=str(error),
            kind=error.kind.value,
            message_id=self.message.id if self.message else None,
        )

    def _persist_partial(self, reason: StreamState):
        """Keep whatever was delivered; never scan it for artifacts."""
        text = "".join(self._buffer)
        if self.message is not None or not text.strip():
            return
        self.message = self.store.append(
            self.conversation_id,
            "assistant",
            text,
            parent_id=self.user_message.id,
            tokens=estimate_tokens(text),
            finish_reason=reason.value,
        )

    def _maybe_set_title(self):
        conversation = self.store.get_conversation(self.conversation_id)
        if conversation.title == DEFAULT_TITLE:
            self.store.set_title(self.conversation_id, title_from_message(self.user_message.content))

    def _transition(self, state: StreamState):
        logger.debug(
            "Stream for message %d: %s -> %s",
            self.user_message.id, self.state.value, state.value,
        )
        self.state = state

    def _close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        if self.on_close is not None:
            self.on_close(self)


async def _pull(chunks: AsyncIterator[StreamChunk]):
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _END
