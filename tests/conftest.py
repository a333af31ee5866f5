"""Shared test fixtures for crater-chat."""

import copy
from datetime import datetime, timezone

import pytest

from crater_chat.core import ImageData, ImageStates, Message, Session
from crater_chat.storage import StorageBackend
from crater_chat.store import SessionStore
from crater_chat.writer import Scheduler

T0 = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class ManualHandle:
    def __init__(self, due, callback, args):
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False


class ManualScheduler(Scheduler):
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self):
        self.now = 0.0
        self._handles: list[ManualHandle] = []

    def schedule(self, delay, callback, *args):
        handle = ManualHandle(self.now + delay, callback, args)
        self._handles.append(handle)
        return handle

    def cancel(self, handle):
        handle.cancelled = True

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = sorted(
            (h for h in self._handles if not h.cancelled and h.due <= self.now),
            key=lambda h: h.due,
        )
        for handle in due:
            handle.cancelled = True
            handle.callback(*handle.args)
        self._handles = [h for h in self._handles if not h.cancelled]


class RecordingBackend(StorageBackend):
    """StorageBackend that records every session read and write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes: list[tuple[str, dict]] = []
        self.events: list[tuple[str, str]] = []

    async def save_session(self, session_id, data):
        self.writes.append((session_id, copy.deepcopy(data)))
        self.events.append(("save", session_id))
        return await super().save_session(session_id, data)

    async def load_session(self, session_id):
        self.events.append(("load", session_id))
        return await super().load_session(session_id)

    def writes_for(self, session_id: str) -> list[dict]:
        return [data for sid, data in self.writes if sid == session_id]


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "storage"


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def backend(storage_dir):
    return RecordingBackend(storage_dir)


@pytest.fixture
def removed_files():
    """Paths handed to the image file remover, in call order."""
    return []


@pytest.fixture
def store(backend, scheduler):
    return SessionStore(backend, delay=0.5, scheduler=scheduler, batch_window=0)


@pytest.fixture
def image_files(tmp_path):
    """Create two generated image files on disk."""
    images = tmp_path / "images"
    images.mkdir()
    paths = []
    for name in ("red-dragon_1.png", "red-dragon_2.png"):
        path = images / name
        path.write_bytes(b"\x89PNG\r\n\x1a\nfake")
        paths.append(str(path))
    return paths


def make_image_message(paths, msg_id="msg-2", prompt="a red dragon sprite") -> Message:
    return Message(
        id=msg_id,
        text=f'Generated {len(paths)} image(s) for: "{prompt}"',
        sender="assistant",
        timestamp=T0,
        message_type="image",
        image_data=ImageData(
            prompt=prompt,
            images=["data:image/png;base64," + "A" * 4096 for _ in paths],
            saved_file_paths=list(paths),
            image_states=ImageStates.for_count(len(paths)),
            usage={"inputTextTokens": 5, "outputImageTokens": 1290, "totalTokens": 1295},
            cost={"totalCost": 0.039, "currency": "USD"},
        ),
    )


@pytest.fixture
def image_session(image_files):
    """A session with one user prompt and one image message."""
    return Session(
        id="session_1740819600000abc123xyz",
        title="a red dragon sprite",
        messages=[
            Message(id="msg-1", text="a red dragon sprite", sender="user", timestamp=T0),
            make_image_message(image_files),
        ],
        created_at=T0,
        last_activity=T0,
    )


@pytest.fixture
def image_store(store, image_files):
    """A store whose current session holds an image message at index 1."""
    store.add_user_message("a red dragon sprite")
    store.append_message(make_image_message(image_files))
    return store
