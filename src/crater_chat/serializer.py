"""Convert sessions to and from their durable JSON form.

Inline image payloads (data URLs, remote URLs) are never persisted. Only
the saved file paths, per-image states and the opaque usage/cost metadata
survive, which keeps a session record at a few kilobytes no matter how many
images it has produced.
"""

import json
from datetime import datetime, timezone
from typing import Any

from .core import ImageData, ImageStates, Message, Session, SessionSummary

SENDERS = ("user", "assistant")
MESSAGE_TYPES = ("text", "image")


class SerializationError(ValueError):
    """Raised when a session cannot be converted to or from its durable form."""


def serialize_session(session: Session) -> dict:
    """Return the persisted form of a session with inline images stripped."""
    try:
        return {
            "id": session.id,
            "title": session.title,
            "messages": [_message_to_record(m) for m in session.messages],
            "createdAt": session.created_at.isoformat(),
            "lastActivity": session.last_activity.isoformat(),
        }
    except (AttributeError, TypeError, ValueError) as e:
        raise SerializationError(f"Cannot serialize session {getattr(session, 'id', '?')}: {e}") from e


def deserialize_session(data: Any) -> Session:
    """Build a Session from a persisted record, validating its shape."""
    if not isinstance(data, dict):
        raise SerializationError("Session record is not an object")

    session_id = data.get("id")
    if not isinstance(session_id, str) or not session_id:
        raise SerializationError("Session record has no id")

    raw_messages = data.get("messages", [])
    if not isinstance(raw_messages, list):
        raise SerializationError(f"Session {session_id} has malformed messages")

    created_at = _parse_time(data.get("createdAt"), "createdAt")
    return Session(
        id=session_id,
        title=str(data.get("title") or ""),
        messages=[_message_from_record(m) for m in raw_messages],
        created_at=created_at,
        last_activity=_parse_time(data.get("lastActivity") or data.get("createdAt"), "lastActivity"),
    )


def serialize_summary(summary: SessionSummary) -> dict:
    return {
        "id": summary.id,
        "title": summary.title,
        "createdAt": summary.created_at.isoformat(),
        "lastActivity": summary.last_activity.isoformat(),
        "messageCount": summary.message_count,
    }


def deserialize_summary(data: Any) -> SessionSummary:
    """Build a SessionSummary from an index entry or a full legacy session."""
    if not isinstance(data, dict) or not isinstance(data.get("id"), str):
        raise SerializationError("Summary record has no id")

    count = data.get("messageCount")
    if not isinstance(count, int):
        messages = data.get("messages")
        count = len(messages) if isinstance(messages, list) else 0

    return SessionSummary(
        id=data["id"],
        title=str(data.get("title") or ""),
        created_at=_parse_time(data.get("createdAt"), "createdAt"),
        last_activity=_parse_time(data.get("lastActivity") or data.get("createdAt"), "lastActivity"),
        message_count=count,
    )


def message_to_dict(msg: Message) -> dict:
    """Convert a Message to the shape the UI expects, keeping inline images."""
    record = _message_to_record(msg)
    if msg.image_data is not None:
        record["imageData"]["images"] = list(msg.image_data.images)
    return record


def dumps(data: dict) -> str:
    return json.dumps(data, ensure_ascii=False)


def loads(raw: str | bytes) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


# ── Private helpers ──────────────────────────────────────────────


def _message_to_record(msg: Message) -> dict:
    if msg.sender not in SENDERS:
        raise ValueError(f"unknown sender {msg.sender!r}")

    record = {
        "id": msg.id,
        "text": msg.text,
        "sender": msg.sender,
        "timestamp": msg.timestamp.isoformat(),
        "messageType": msg.message_type,
    }
    if msg.image_data is not None:
        record["imageData"] = _image_data_to_record(msg.image_data)
    return record


def _image_data_to_record(data: ImageData) -> dict:
    paths = list(data.saved_file_paths)
    record = {
        "prompt": data.prompt,
        "images": [],
        "savedFilePaths": paths,
    }
    if data.image_states is not None:
        states = data.image_states
        if len(states.deleted) != len(paths) or len(states.hidden) != len(paths):
            raise ValueError(
                f"image states length mismatch: {len(states.deleted)}/{len(states.hidden)} "
                f"for {len(paths)} paths"
            )
        record["imageStates"] = {
            "deleted": [bool(d) for d in states.deleted],
            "hidden": [bool(h) for h in states.hidden],
        }
    if data.usage is not None:
        record["usage"] = data.usage
    if data.cost is not None:
        record["cost"] = data.cost
    return record


def _message_from_record(data: Any) -> Message:
    if not isinstance(data, dict):
        raise SerializationError("Message record is not an object")

    sender = data.get("sender")
    if sender not in SENDERS:
        raise SerializationError(f"Message has unknown sender: {sender!r}")

    message_type = data.get("messageType") or "text"
    if message_type not in MESSAGE_TYPES:
        raise SerializationError(f"Message has unknown type: {message_type!r}")

    image_data = None
    raw_image = data.get("imageData")
    if raw_image is not None:
        image_data = _image_data_from_record(raw_image)

    return Message(
        id=str(data.get("id") or ""),
        text=str(data.get("text") or ""),
        sender=sender,
        timestamp=_parse_time(data.get("timestamp"), "timestamp"),
        message_type=message_type,
        image_data=image_data,
    )


def _image_data_from_record(data: Any) -> ImageData:
    if not isinstance(data, dict):
        raise SerializationError("imageData is not an object")

    # Records written before the rename used "savedPaths"
    paths = data.get("savedFilePaths", data.get("savedPaths", []))
    if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
        raise SerializationError("imageData has malformed savedFilePaths")

    states = None
    raw_states = data.get("imageStates")
    if raw_states is not None:
        if not isinstance(raw_states, dict):
            raise SerializationError("imageStates is not an object")
        deleted = raw_states.get("deleted", [])
        hidden = raw_states.get("hidden", [])
        if not isinstance(deleted, list) or not isinstance(hidden, list):
            raise SerializationError("imageStates has malformed flags")
        if len(deleted) != len(paths) or len(hidden) != len(paths):
            raise SerializationError("imageStates length does not match savedFilePaths")
        states = ImageStates(deleted=[bool(d) for d in deleted], hidden=[bool(h) for h in hidden])

    return ImageData(
        prompt=str(data.get("prompt") or ""),
        images=[],
        saved_file_paths=list(paths),
        image_states=states,
        usage=data.get("usage"),
        cost=data.get("cost"),
    )


def _parse_time(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise SerializationError(f"Missing or malformed {name}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise SerializationError(f"Malformed {name}: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
