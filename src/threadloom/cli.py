"""CLI interface for threadloom."""

from __future__ import annotations

import logging
import sys

import click

from . import __version__
from .config import DATA_DIR, HOST, LOG_FORMAT, LOG_LEVEL, PORT, SQLITE_PATH


@click.group()
@click.version_option(version=__version__, prog_name="threadloom")
@click.option("--log-level", default=LOG_LEVEL, show_default=True, help="Logging level")
def cli(log_level: str):
    """threadloom — branching chat backend with streamed replies and versioned artifacts."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)


@cli.command()
@click.option("--host", default=HOST, show_default=True)
@click.option("--port", default=PORT, show_default=True, type=int)
def serve(host: str, port: int):
    """Start the HTTP API (server-sent events for replies)."""
    import uvicorn

    from .api import create_app

    click.echo(f"Serving threadloom on http://{host}:{port} (data: {DATA_DIR})", err=True)
    uvicorn.run(create_app(), host=host, port=port)


@cli.command()
def mcp():
    """Start the MCP server (stdio transport)."""
    from .server import mcp as mcp_server

    mcp_server.run(transport="stdio")


@cli.command("import")
@click.argument("zip_path", type=click.Path(exists=True))
def import_cmd(zip_path: str):
    """Import a ChatGPT data export ZIP file, edit branches included.

    Example:
        threadloom import ~/Downloads/chatgpt-2024-01-15.zip
    """
    from .importer import import_chatgpt_export
    from .storage import ConversationStore

    store = ConversationStore(SQLITE_PATH)
    try:
        import_chatgpt_export(zip_path, store)
    finally:
        store.close()


@cli.command()
def stats():
    """Show statistics about stored conversations."""
    if not SQLITE_PATH.exists():
        click.echo("No data found. Start the server or import a ChatGPT export first.")
        return

    from .storage import ConversationStore

    store = ConversationStore(SQLITE_PATH)
    s = store.get_stats()
    store.close()

    click.echo()
    click.echo(click.style("threadloom statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Branch points:  {s['branch_points']:,}")
    click.echo(f"  Artifacts:      {s['total_artifacts']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    if s["top_models"]:
        click.echo("  Models used:")
        for m in s["top_models"]:
            click.echo(f"    {m['model']}: {m['count']:,}")

    db_size = SQLITE_PATH.stat().st_size
    click.echo(f"  Storage:        {db_size / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()
