"""In-memory authority for chat sessions and the current-session pointer."""

import logging
from pathlib import Path
from typing import Callable

from .config import get_debounce_delay, get_storage_path, is_persistence_enabled
from .core import (
    GENERIC_TITLE_PREFIX,
    ImageData,
    Message,
    Session,
    SessionSummary,
    default_title,
    generate_message_id,
    generate_session_id,
    generate_title,
    utcnow,
)
from .images import DEFAULT_BATCH_WINDOW, ImageLifecycleController
from .serializer import SerializationError, serialize_session
from .storage import StorageBackend
from .writer import DebouncedWriter, Scheduler

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """Raised when switching to a session id the store does not know."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class SessionStore:
    """Owns every session in memory and keeps the durable mirror in sync.

    Mutations happen synchronously in memory; persistence is scheduled
    through a DebouncedWriter and only awaited where ordering matters
    (creating or switching sessions, teardown).
    """

    def __init__(
        self,
        backend: StorageBackend,
        delay: float | None = None,
        scheduler: Scheduler | None = None,
        persistence_enabled: bool = True,
        batch_window: float = DEFAULT_BATCH_WINDOW,
        remove_file: Callable[[str], None] | None = None,
    ):
        self.backend = backend
        self.writer = DebouncedWriter(
            self._persist,
            delay=get_debounce_delay() if delay is None else delay,
            scheduler=scheduler,
            enabled=persistence_enabled,
        )
        self.images = ImageLifecycleController(self.writer, batch_window=batch_window, remove_file=remove_file)
        self._index: list[SessionSummary] = []
        self._sessions: dict[str, Session] = {}
        self._current_id: str | None = None

    @classmethod
    def from_config(cls, storage_path: Path | None = None, **kwargs) -> "SessionStore":
        """Build a store from environment settings."""
        backend = StorageBackend(storage_path or get_storage_path())
        kwargs.setdefault("persistence_enabled", is_persistence_enabled())
        return cls(backend, **kwargs)

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    # ── Loading ──────────────────────────────────────────────────────

    async def load(self) -> None:
        """Read the session index and the current session from storage."""
        result = await self.backend.load_index()
        if result is None:
            migrated = await self.backend.migrate_legacy_history()
            if migrated is not None:
                self._sessions[migrated.id] = migrated
                self._index = [migrated.summary()]
                self._current_id = migrated.id
                await self._save_index()
            logger.info("Loaded %d chat sessions", len(self._index))
            return

        summaries, current_id = result
        self._index = summaries
        if current_id is not None and self._find_summary(current_id) is None:
            logger.warning("Current session %s is not in the index, clearing it", current_id)
            current_id = None

        if current_id is not None:
            self._sessions[current_id] = await self._load_or_empty(current_id)
        self._current_id = current_id
        logger.info("Loaded %d chat sessions", len(self._index))

    # ── Session operations ───────────────────────────────────────────

    def get_current_session(self) -> Session:
        """Return the current session, starting an empty one if there is none."""
        if self._current_id is not None and self._current_id in self._sessions:
            return self._sessions[self._current_id]

        session = self._new_session()
        self._sessions[session.id] = session
        self._index.insert(0, session.summary())
        self._current_id = session.id
        logger.info("Started chat session %s", session.id)
        return session

    @property
    def current_session(self) -> Session | None:
        """The current session, or None. Unlike get_current_session, never creates one."""
        if self._current_id is None:
            return None
        return self._sessions.get(self._current_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def create_session(self) -> Session:
        """Start a new empty session and make it current."""
        if self._current_id is not None:
            await self._release(self._current_id)

        session = self._new_session()
        self._sessions[session.id] = session
        self._index.insert(0, session.summary())
        self._current_id = session.id
        await self._save_index()
        logger.info("Created new chat session: %s", session.id)
        return session

    async def switch_session(self, session_id: str) -> Session:
        """Make another session current, persisting the outgoing one first."""
        if session_id not in self._sessions and self._find_summary(session_id) is None:
            raise SessionNotFoundError(session_id)

        if self._current_id is not None:
            await self._release(self._current_id)

        session = self._sessions.get(session_id)
        if session is None:
            session = await self._load_or_empty(session_id)
            self._sessions[session_id] = session

        self._current_id = session_id
        session.last_activity = utcnow()
        self._refresh_summary(session)
        await self._save_index()
        logger.info("Loaded chat session: %s with %d messages", session_id, len(session.messages))
        return session

    def append_message(self, message: Message, session_id: str | None = None) -> Message:
        """Append to a session (the current one by default) and schedule its write."""
        if session_id is None:
            session = self.get_current_session()
        else:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
        session.messages.append(message)
        session.last_activity = utcnow()
        if session.title.startswith(GENERIC_TITLE_PREFIX):
            session.title = generate_title(session.messages)
        self._refresh_summary(session)
        self.writer.schedule_write(session.id)
        return message

    def add_user_message(self, text: str, session_id: str | None = None) -> Message:
        return self.append_message(Message(
            id=generate_message_id(),
            text=text,
            sender="user",
            timestamp=utcnow(),
        ), session_id)

    def add_assistant_message(
        self,
        text: str,
        image_data: ImageData | None = None,
        session_id: str | None = None,
    ) -> Message:
        return self.append_message(Message(
            id=generate_message_id(),
            text=text,
            sender="assistant",
            timestamp=utcnow(),
            message_type="image" if image_data is not None else "text",
            image_data=image_data,
        ), session_id)

    def list_summaries(self) -> list[SessionSummary]:
        """Return session summaries, most recently active first."""
        for session in self._sessions.values():
            self._refresh_summary(session)
        return sorted(self._index, key=lambda s: s.last_activity, reverse=True)

    async def flush(self) -> None:
        await self.writer.flush_all()

    async def close(self) -> None:
        """Final flush on teardown; failures are logged, not retried."""
        await self.writer.close()
        if self.images.deletions_pending:
            report = await self.images.drain_deletions()
            logger.info("Teardown: %s", report.summary())

    # ── Private helpers ──────────────────────────────────────────────

    async def _persist(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Nothing to persist for unknown session %s", session_id)
            return False

        try:
            data = serialize_session(session)
        except SerializationError as e:
            logger.error("Skipping write of session %s: %s", session_id, e)
            return False

        if not await self.backend.save_session(session_id, data):
            return False
        self._refresh_summary(session)
        await self._save_index()
        return True

    async def _release(self, session_id: str) -> None:
        """Persist an outgoing session and drop its image bookkeeping."""
        await self.writer.flush(session_id)
        self.images.forget_session(session_id)

    async def _save_index(self) -> None:
        await self.backend.save_index(self._index, self._current_id)

    async def _load_or_empty(self, session_id: str) -> Session:
        session = await self.backend.load_session(session_id)
        if session is not None:
            return session

        # Every tier missed: start over with an empty session under the same id
        summary = self._find_summary(session_id)
        if summary is None:
            return Session(id=session_id, title=default_title())
        return Session(
            id=session_id,
            title=summary.title,
            created_at=summary.created_at,
            last_activity=summary.last_activity,
        )

    def _new_session(self) -> Session:
        return Session(id=generate_session_id(), title=default_title())

    def _find_summary(self, session_id: str) -> SessionSummary | None:
        return next((s for s in self._index if s.id == session_id), None)

    def _refresh_summary(self, session: Session) -> None:
        summary = session.summary()
        for i, existing in enumerate(self._index):
            if existing.id == session.id:
                self._index[i] = summary
                return
        self._index.insert(0, summary)
