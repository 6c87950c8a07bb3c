from __future__ import annotations

from pathlib import Path

import pytest

from threadloom.producers import ScriptedProducer
from threadloom.service import ChatService
from threadloom.storage import ConversationStore


@pytest.fixture
def store(tmp_path: Path):
    s = ConversationStore(tmp_path / "threadloom.db")
    yield s
    s.close()


@pytest.fixture
def conversation(store: ConversationStore):
    return store.create_conversation()


@pytest.fixture
def make_service(store: ConversationStore):
    """Build a ChatService over the test store with a scripted producer."""

    def _make(chunks: list[str] | None = None, **kwargs) -> tuple[ChatService, ScriptedProducer]:
        timeout = kwargs.pop("supersede_timeout", 1.0)
        producer = ScriptedProducer(chunks if chunks is not None else ["Hel", "lo"], **kwargs)
        return ChatService(store, producer=producer, supersede_timeout=timeout), producer

    return _make
