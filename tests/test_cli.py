"""Tests for the crater-chat command line."""

import asyncio
from unittest.mock import patch

from click.testing import CliRunner

from crater_chat.cli import main
from crater_chat.serializer import serialize_session
from crater_chat.storage import StorageBackend

runner = CliRunner()


def test_help_lists_commands():
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "serve" in result.output
    assert "sessions" in result.output


def test_sessions_empty(storage_dir):
    result = runner.invoke(main, ["sessions", "--storage", str(storage_dir)])
    assert result.exit_code == 0
    assert "No chat sessions found." in result.output


def test_sessions_marks_current(storage_dir, image_session):
    backend = StorageBackend(storage_dir)
    asyncio.run(backend.save_session(image_session.id, serialize_session(image_session)))
    asyncio.run(backend.save_index([image_session.summary()], image_session.id))

    result = runner.invoke(main, ["sessions", "--storage", str(storage_dir)])

    assert result.exit_code == 0
    line = result.output.strip()
    assert line.startswith(f"* {image_session.id}")
    assert line.endswith("a red dragon sprite")
    assert "   2  " in line


def test_serve_runs_uvicorn():
    with patch("crater_chat.cli.uvicorn.run") as run:
        result = runner.invoke(main, ["serve", "--port", "9001"])
    assert result.exit_code == 0
    run.assert_called_once_with("crater_chat.server:app", host="127.0.0.1", port=9001, reload=False)
