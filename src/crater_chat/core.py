"""Core data models for crater-chat."""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

GENERIC_TITLE_PREFIX = "Chat "
TITLE_LENGTH = 30


@dataclass
class ImageStates:
    """Per-image visibility flags, index-aligned with saved file paths."""

    deleted: list[bool] = field(default_factory=list)
    hidden: list[bool] = field(default_factory=list)

    @classmethod
    def for_count(cls, count: int) -> "ImageStates":
        return cls(deleted=[False] * count, hidden=[False] * count)

    def copy(self) -> "ImageStates":
        return ImageStates(deleted=list(self.deleted), hidden=list(self.hidden))


@dataclass
class ImageData:
    """Generated images attached to an assistant message."""

    prompt: str
    images: list[str] = field(default_factory=list)  # data URLs or remote URLs, memory only
    saved_file_paths: list[str] = field(default_factory=list)
    image_states: Optional[ImageStates] = None
    usage: Optional[dict] = None
    cost: Optional[dict] = None


@dataclass
class Message:
    """A single chat message."""

    id: str
    text: str
    sender: str  # "user" | "assistant"
    timestamp: datetime
    message_type: str = "text"  # "text" | "image"
    image_data: Optional[ImageData] = None


@dataclass
class Session:
    """A single conversation thread."""

    id: str
    title: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: utcnow())
    last_activity: datetime = field(default_factory=lambda: utcnow())

    def summary(self) -> "SessionSummary":
        return SessionSummary(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            last_activity=self.last_activity,
            message_count=len(self.messages),
        )


@dataclass
class SessionSummary:
    """Lightweight listing entry kept in the session index."""

    id: str
    title: str
    created_at: datetime
    last_activity: datetime
    message_count: int = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _random_suffix() -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=9))


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}{_random_suffix()}"


def generate_message_id() -> str:
    return f"{int(time.time() * 1000)}{_random_suffix()}"


def default_title() -> str:
    return f"{GENERIC_TITLE_PREFIX}{datetime.now().strftime('%x')}"


def generate_title(messages: list[Message]) -> str:
    """Derive a session title from the first user message."""
    first_user = next((m for m in messages if m.sender == "user"), None)
    if first_user is None:
        return default_title()

    base = first_user.text[:TITLE_LENGTH].replace("\n", " ").strip()
    if len(base) < len(first_user.text):
        return base + "..."
    return base
