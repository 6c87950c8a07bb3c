"""Tests for ChatGPT export parsing and import."""

from __future__ import annotations

import json
import zipfile

import click
import pytest

from threadloom.importer import import_chatgpt_export, load_export
from threadloom.parser import parse_conversation, parse_conversations


def _node(node_id, parent, role, text, ts, children=(), slug=None):
    message = None
    if role is not None:
        message = {
            "author": {"role": role},
            "content": {"parts": [text]},
            "create_time": ts,
            "metadata": {"model_slug": slug} if slug else {},
        }
    return {"id": node_id, "parent": parent, "children": list(children), "message": message}


def _edited_conversation():
    """root -> system -> q1 -> (a1 -> tool -> q2) and an edited sibling q1'."""
    mapping = {
        "root": _node("root", None, None, None, None, ["sys"]),
        "sys": _node("sys", "root", "system", "", 1.0, ["q1", "q1b"]),
        "q1": _node("q1", "sys", "user", "first question", 2.0, ["a1"]),
        "a1": _node("a1", "q1", "assistant", "first answer", 3.0, ["tool"], slug="gpt-4o"),
        "tool": _node("tool", "a1", "tool", "search results", 4.0, ["q2"]),
        "q2": _node("q2", "tool", "user", "follow-up", 5.0),
        "q1b": _node("q1b", "sys", "user", "edited question", 6.0),
    }
    return {
        "id": "conv-1",
        "title": "Edited chat",
        "create_time": 1.0,
        "mapping": mapping,
    }


def _write_export(path, conversations):
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("conversations.json", json.dumps(conversations))
    return str(path)


class TestParser:
    def test_keeps_every_branch(self):
        conv = parse_conversation(_edited_conversation())

        assert conv.source_id == "conv-1"
        assert conv.model_slug == "gpt-4o"
        assert {n.node_id for n in conv.nodes} == {"q1", "a1", "q2", "q1b"}

    def test_skipped_nodes_are_bridged(self):
        conv = parse_conversation(_edited_conversation())
        parents = {n.node_id: n.parent_node_id for n in conv.nodes}

        assert parents["q1"] is None
        assert parents["q1b"] is None
        assert parents["a1"] == "q1"
        assert parents["q2"] == "a1"

    def test_parents_come_first(self):
        conv = parse_conversation(_edited_conversation())
        seen = set()
        for node in conv.nodes:
            assert node.parent_node_id is None or node.parent_node_id in seen
            seen.add(node.node_id)

    def test_nothing_usable(self):
        data = {"id": "x", "mapping": {"root": _node("root", None, None, None, None)}}
        assert parse_conversation(data) is None

    def test_bad_entries_are_skipped(self):
        parsed = parse_conversations([{"title": "no id"}, _edited_conversation()])
        assert [c.source_id for c in parsed] == ["conv-1"]


class TestImport:
    def test_import_builds_tree(self, store, tmp_path):
        zip_path = _write_export(tmp_path / "export.zip", [_edited_conversation()])

        summary = import_chatgpt_export(zip_path, store)

        assert summary == {"imported": 1, "skipped": 0, "messages": 4}
        conv = store.find_by_source("conv-1")
        assert conv.title == "Edited chat"
        assert conv.model == "gpt-4o"
        messages = {m.content: m for m in store.list_by_conversation(conv.id)}
        assert messages["first answer"].parent_message_id == messages["first question"].id
        assert messages["follow-up"].parent_message_id == messages["first answer"].id
        assert messages["edited question"].parent_message_id is None
        assert store.get_stats()["branch_points"] == 1

    def test_second_import_skips_known_conversations(self, store, tmp_path):
        zip_path = _write_export(tmp_path / "export.zip", [_edited_conversation()])
        import_chatgpt_export(zip_path, store)

        summary = import_chatgpt_export(zip_path, store)

        assert summary["imported"] == 0
        assert summary["skipped"] == 1
        assert store.get_stats()["total_conversations"] == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(click.ClickException):
            load_export(str(tmp_path / "nope.zip"))

    def test_zip_without_conversations(self, tmp_path):
        path = tmp_path / "other.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("readme.txt", "hello")
        with pytest.raises(click.ClickException):
            load_export(str(path))
