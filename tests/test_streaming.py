"""Tests for the response stream state machine."""

from __future__ import annotations

import asyncio

import pytest

from threadloom.errors import CollaboratorFailure, FailureKind
from threadloom.models import ArtifactType
from threadloom.producers import ResponseProducer, ScriptedProducer, StreamChunk
from threadloom.streaming import ResponseStream, StreamState, title_from_message
from tests.helpers import build_thread, collect

HTML_CHUNKS = [
    "Here you go:\n\n```html\n",
    "<button style=\"background:red\">Go</button>\n",
    "```\n",
]


def _stream(store, conversation, chunks, text="hello", **kwargs):
    (user,) = build_thread(store, conversation.id, text)
    producer = ScriptedProducer(chunks, **kwargs)
    return ResponseStream(store, producer, user), producer, user


async def _wait_for_state(stream: ResponseStream, state: StreamState):
    while stream.state is not state:
        await asyncio.sleep(0)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_chunks_are_forwarded_and_persisted(self, store, conversation):
        stream, _, user = _stream(store, conversation, ["Hel", "lo"])

        events = await collect(stream)

        assert [e.type for e in events] == ["content", "content", "done"]
        assert [e.text for e in events[:2]] == ["Hel", "lo"]
        assert stream.state is StreamState.COMPLETED
        reply = store.get(events[-1].message_id)
        assert reply.content == "Hello"
        assert reply.role == "assistant"
        assert reply.parent_message_id == user.id
        assert reply.finish_reason == "completed"

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["a", "b", "c"])
        events = await collect(stream)
        assert sum(e.is_terminal for e in events) == 1
        assert events[-1].is_terminal

    @pytest.mark.asyncio
    async def test_html_reply_becomes_markup_artifact(self, store, conversation):
        stream, _, _ = _stream(store, conversation, HTML_CHUNKS, text="draw a red button in html")

        events = await collect(stream)

        done = events[-1]
        (artifact,) = done.artifacts
        assert artifact.type is ArtifactType.MARKUP
        assert artifact.version == 1
        assert artifact.message_id == done.message_id
        assert artifact.identifier == f"artifact_{done.message_id}_1"
        assert store.artifacts_for_message(done.message_id) == [artifact]

    @pytest.mark.asyncio
    async def test_history_is_the_ancestor_path(self, store, conversation):
        first, reply, _ = build_thread(store, conversation.id, "q1", "a1", "q2")
        # A sibling of the reply must not be sent to the producer
        store.append(conversation.id, "assistant", "other branch", parent_id=first.id)
        follow_up = store.children(reply.id)[0]
        producer = ScriptedProducer(["ok"])
        stream = ResponseStream(store, producer, follow_up, system="be brief")

        await collect(stream)

        ((history, system),) = producer.calls
        assert history == [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        assert system == "be brief"

    @pytest.mark.asyncio
    async def test_usage_sets_token_count(self, store, conversation):
        stream, _, _ = _stream(
            store, conversation, ["hi"], usage={"input_tokens": 10, "output_tokens": 5}
        )
        events = await collect(stream)
        assert events[-1].tokens == 15
        assert store.get_conversation(conversation.id).token_count == 15

    @pytest.mark.asyncio
    async def test_first_exchange_titles_conversation(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["sure"], text="can you explain recursion")
        await collect(stream)
        assert store.get_conversation(conversation.id).title == "Explain recursion"

    @pytest.mark.asyncio
    async def test_empty_reply_fails(self, store, conversation):
        stream, _, _ = _stream(store, conversation, [])
        events = await collect(stream)
        assert events[-1].type == "error"
        assert events[-1].kind == "invalid"
        assert stream.state is StreamState.FAILED

    @pytest.mark.asyncio
    async def test_consumed_once(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["x"])
        await collect(stream)
        with pytest.raises(RuntimeError):
            await collect(stream)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_partial_text(self, store, conversation):
        stream, _, user = _stream(store, conversation, ["Hel", "lo"], hold_after=1)

        events = []
        async for event in stream.events():
            events.append(event)
            if event.text == "Hel":
                stream.cancel()

        assert [e.type for e in events] == ["content", "aborted"]
        assert stream.state is StreamState.ABORTED
        reply = store.get(events[-1].message_id)
        assert reply.content == "Hel"
        assert reply.parent_message_id == user.id
        assert reply.finish_reason == "aborted"
        assert stream.artifacts == []
        assert store.artifacts_for_conversation(conversation.id) == []

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_a_chunk(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["Hel", "lo"], hold_after=1)
        task = asyncio.create_task(collect(stream))
        await _wait_for_state(stream, StreamState.STREAMING)
        await asyncio.sleep(0.01)

        stream.cancel()
        events = await asyncio.wait_for(task, timeout=1)

        assert events[-1].type == "aborted"
        assert store.get(events[-1].message_id).content == "Hel"

    @pytest.mark.asyncio
    async def test_aborted_fenced_block_is_not_an_artifact(self, store, conversation):
        chunks = ["```html\n<b>complete</b>\n```", " and more"]
        stream, _, _ = _stream(store, conversation, chunks, hold_after=1)

        async for event in stream.events():
            if event.type == "content":
                stream.cancel()

        assert stream.state is StreamState.ABORTED
        assert store.artifacts_for_conversation(conversation.id) == []

    @pytest.mark.asyncio
    async def test_cancel_before_first_chunk_persists_nothing(self, store, conversation):
        stream, _, user = _stream(store, conversation, ["never"], hold_after=0)
        task = asyncio.create_task(collect(stream))
        await _wait_for_state(stream, StreamState.REQUESTING)
        await asyncio.sleep(0.01)

        stream.cancel()
        events = await asyncio.wait_for(task, timeout=1)

        assert [e.type for e in events] == ["aborted"]
        assert events[0].message_id is None
        assert [m.id for m in store.list_by_conversation(conversation.id)] == [user.id]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, store, conversation):
        stream, producer, _ = _stream(store, conversation, ["x"])
        stream.cancel()

        events = await collect(stream)

        assert [e.type for e in events] == ["aborted"]
        assert producer.calls == []

    @pytest.mark.asyncio
    async def test_consumer_leaving_aborts(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["Hel", "lo"], hold_after=1)
        events = stream.events()
        first = await events.__anext__()
        await events.aclose()

        assert first.text == "Hel"
        assert stream.state is StreamState.ABORTED
        assert stream.message.content == "Hel"


class TestFailure:
    @pytest.mark.asyncio
    async def test_failure_before_any_chunk_persists_nothing(self, store, conversation):
        failure = CollaboratorFailure(FailureKind.RATE_LIMITED, "slow down")
        stream, _, user = _stream(store, conversation, ["x"], fail_after=0, failure=failure)

        events = await collect(stream)

        assert [e.type for e in events] == ["error"]
        assert events[0].kind == "rate_limited"
        assert events[0].message_id is None
        assert stream.state is StreamState.FAILED
        assert stream.error is failure
        assert [m.id for m in store.list_by_conversation(conversation.id)] == [user.id]

    @pytest.mark.asyncio
    async def test_failure_after_chunks_keeps_partial(self, store, conversation):
        chunks = ["```html\n<p>", "x</p>\n```"]
        stream, _, _ = _stream(store, conversation, chunks, fail_after=2)

        events = await collect(stream)

        assert [e.type for e in events] == ["content", "content", "error"]
        assert events[-1].kind == "network"
        reply = store.get(events[-1].message_id)
        assert reply.content == "```html\n<p>x</p>\n```"
        assert reply.finish_reason == "failed"
        assert store.artifacts_for_conversation(conversation.id) == []

    @pytest.mark.asyncio
    async def test_unclassified_error_is_reported_as_network(self, store, conversation):
        stream, _, _ = _stream(
            store, conversation, ["x"], fail_after=0, failure=ConnectionResetError("reset")
        )
        events = await collect(stream)
        assert events[-1].type == "error"
        assert events[-1].kind == "network"


class TestTitle:
    @pytest.mark.parametrize(
        "content, expected",
        [
            ("please write a haiku", "Write a haiku"),
            ("hi", "New Chat"),
            ("x" * 80, "X" + "x" * 46 + "..."),
        ],
    )
    def test_title_from_message(self, content, expected):
        assert title_from_message(content) == expected


class _FinalTextProducer(ResponseProducer):
    """Puts the last piece of text on the end-of-output chunk."""

    @property
    def model_id(self) -> str:
        return "final-text"

    async def stream(self, history, system=None):
        yield StreamChunk(text="Hel")
        yield StreamChunk(text="lo", is_final=True, usage={"input_tokens": 1, "output_tokens": 1})


class TestCompletionEdgeCases:
    @pytest.mark.asyncio
    async def test_empty_fenced_block_still_completes(self, store, conversation):
        stream, _, _ = _stream(store, conversation, ["Here:\n```python\n```\ndone"])

        events = await collect(stream)

        assert [e.type for e in events] == ["content", "done"]
        assert events[-1].artifacts == []
        assert stream.state is StreamState.COMPLETED
        assert store.artifacts_for_conversation(conversation.id) == []

    @pytest.mark.asyncio
    async def test_blank_block_beside_real_one(self, store, conversation):
        chunks = ["```html\n<p>kept</p>\n```\n", "```css\n  \n```"]
        stream, _, _ = _stream(store, conversation, chunks)

        events = await collect(stream)

        (artifact,) = events[-1].artifacts
        assert artifact.content == "<p>kept</p>"
        assert stream.state is StreamState.COMPLETED

    @pytest.mark.asyncio
    async def test_text_on_final_chunk_is_kept(self, store, conversation):
        (user,) = build_thread(store, conversation.id, "hello")
        stream = ResponseStream(store, _FinalTextProducer(), user)

        events = await collect(stream)

        assert [e.type for e in events] == ["content", "content", "done"]
        assert [e.text for e in events[:2]] == ["Hel", "lo"]
        assert store.get(events[-1].message_id).content == "Hello"
