"""Import pipeline: ZIP extraction → parsing → message tree storage."""

from __future__ import annotations

import json
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import click

from .models import ExportConversation
from .parser import parse_conversations
from .storage import ConversationStore

logger = logging.getLogger(__name__)


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="microseconds")


def load_export(zip_path: str) -> list[ExportConversation]:
    """Read and parse conversations.json out of a ChatGPT export ZIP."""
    zip_file = Path(zip_path)

    if not zip_file.exists():
        raise click.ClickException(f"File not found: {zip_path}")

    if not zipfile.is_zipfile(str(zip_file)):
        raise click.ClickException(f"Not a valid ZIP file: {zip_path}")

    with zipfile.ZipFile(str(zip_file), "r") as zf:
        if "conversations.json" not in zf.namelist():
            raise click.ClickException(
                "No conversations.json found in ZIP. "
                "Make sure this is a ChatGPT data export "
                "(Settings → Data Controls → Export Data)."
            )

        with zf.open("conversations.json") as f:
            data = json.load(f)

    if not isinstance(data, list):
        raise click.ClickException("conversations.json is not a JSON array.")

    click.echo(f"Found {len(data)} conversations in export.")
    return parse_conversations(data)


def store_conversation(store: ConversationStore, conv: ExportConversation) -> int:
    """Insert one parsed conversation with its full tree; returns the message count."""
    created_at = _iso(conv.create_time)
    conversation = store.create_conversation(
        title=conv.title,
        model=conv.model_slug,
        created_at=created_at,
        source_id=conv.source_id,
    )

    ids: dict[str, int] = {}
    for node in conv.nodes:
        message = store.append(
            conversation.id,
            node.role,
            node.content,
            parent_id=ids.get(node.parent_node_id) if node.parent_node_id else None,
            created_at=_iso(node.timestamp) or created_at,
        )
        ids[node.node_id] = message.id
    return len(ids)


def import_chatgpt_export(zip_path: str, store: ConversationStore) -> dict:
    """Import a ChatGPT export ZIP file, keeping every edit branch.

    Conversations imported before (same export id) are skipped.
    Returns a summary dict with import statistics.
    """
    click.echo("Reading ZIP file...")
    conversations = load_export(zip_path)
    click.echo(f"Successfully parsed {len(conversations)} conversations.")

    if not conversations:
        click.echo("No conversations to import.")
        return {"imported": 0, "skipped": 0, "messages": 0}

    imported = 0
    skipped = 0
    total_messages = 0

    with click.progressbar(
        conversations,
        label="Importing conversations",
        show_pos=True,
    ) as progress:
        for conv in progress:
            if store.find_by_source(conv.source_id) is not None:
                skipped += 1
                continue

            total_messages += store_conversation(store, conv)
            imported += 1

    store.record_import(
        file_path=str(Path(zip_path)),
        conversations=imported,
        messages=total_messages,
    )

    click.echo()
    click.echo(click.style("Import complete!", fg="green", bold=True))
    click.echo(f"  Imported: {imported} conversations ({total_messages} messages)")
    if skipped:
        click.echo(f"  Skipped:  {skipped} (already imported)")

    stats = store.get_stats()
    click.echo(f"  Branch points: {stats['branch_points']}")

    return {"imported": imported, "skipped": skipped, "messages": total_messages}
