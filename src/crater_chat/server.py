"""FastAPI host process for crater-chat.

The UI bridge talks to the engine either one command per request
(``POST /api/command``) or over a long-lived WebSocket (``/ws``).
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect

from . import __version__
from .collaborators import FileImageSaver, MockImageProvider
from .dispatch import CommandDispatcher
from .store import SessionStore

logger = logging.getLogger(__name__)

# Dispatcher cache (populated on first request)
_dispatcher: CommandDispatcher | None = None


async def build_dispatcher() -> CommandDispatcher:
    """Create the store from environment settings and load it."""
    store = SessionStore.from_config()
    await store.load()
    return CommandDispatcher(store, provider=MockImageProvider(), image_saver=FileImageSaver())


async def _get_dispatcher() -> CommandDispatcher:
    """Lazily initialize and cache the dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = await build_dispatcher()
        logger.info("Session store ready at %s", _dispatcher.store.backend.storage_path)
    return _dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _dispatcher
    if _dispatcher is not None:
        try:
            await _dispatcher.store.close()
        except Exception as e:
            logger.error("Final flush failed: %s", e)
        _dispatcher = None


app = FastAPI(title="crater-chat", version=__version__, lifespan=lifespan)


# ── Routes ───────────────────────────────────────────────────────


@app.get("/")
async def index():
    """Describe the service and the commands it accepts."""
    dispatcher = await _get_dispatcher()
    return {
        "name": "crater-chat",
        "version": __version__,
        "commands": dispatcher.commands,
    }


@app.post("/api/command")
async def command(message: dict = Body(...)):
    """Handle one tagged command message."""
    dispatcher = await _get_dispatcher()
    return await dispatcher.handle(message)


@app.get("/api/sessions")
async def get_sessions():
    """Return session summaries, most recently active first."""
    dispatcher = await _get_dispatcher()
    return await dispatcher.handle({"type": "get-chat-sessions"})


@app.websocket("/ws")
async def websocket_bridge(websocket: WebSocket):
    """Command loop: one response per received message."""
    await websocket.accept()
    dispatcher = await _get_dispatcher()
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except json.JSONDecodeError as e:
                logger.warning("Ignoring malformed frame from UI bridge: %s", e)
                await websocket.send_json({"type": "error", "error": f"Invalid JSON: {e}"})
                continue
            await websocket.send_json(await dispatcher.handle(message))
    except WebSocketDisconnect:
        logger.debug("UI bridge disconnected")
    finally:
        await dispatcher.store.flush()
