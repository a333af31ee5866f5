"""CLI entry point for crater-chat."""

import asyncio
from pathlib import Path

import click
import uvicorn

from .store import SessionStore


@click.group()
def main():
    """Run and inspect the Crater chat session engine."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the host process for the UI bridge."""
    click.echo(f"Starting crater-chat on http://{host}:{port}")
    uvicorn.run("crater_chat.server:app", host=host, port=port, reload=False)


@main.command()
@click.option("--storage", type=click.Path(file_okay=False, path_type=Path), help="Storage directory.")
def sessions(storage: Path | None):
    """List stored chat sessions, most recently active first."""
    store = SessionStore.from_config(storage, persistence_enabled=False)
    asyncio.run(store.load())

    summaries = store.list_summaries()
    if not summaries:
        click.echo("No chat sessions found.")
        return
    for s in summaries:
        marker = "*" if s.id == store.current_session_id else " "
        click.echo(f"{marker} {s.id}  {s.last_activity:%Y-%m-%d %H:%M}  {s.message_count:>4}  {s.title}")
