"""Command dispatch for tagged messages coming from the UI bridge.

Every message is a dict with a ``type``. Handlers mutate the SessionStore
synchronously and only suspend on awaited I/O. ``handle`` never raises:
bad input and failures come back as ``{"type": "error"}`` responses.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from .collaborators import FileImageSaver, GenerationResult, ImageProvider, resolve_file_reference
from .core import ImageData, ImageStates, Session
from .serializer import message_to_dict, serialize_summary
from .store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[dict]]

NOT_CONFIGURED_RESPONSE = "Please configure your API key in settings first."


class CommandDispatcher:
    """Routes UI commands to the SessionStore and its image controller."""

    def __init__(
        self,
        store: SessionStore,
        provider: ImageProvider | None = None,
        image_saver: FileImageSaver | None = None,
        resolve_reference: Callable[[str], str | None] = resolve_file_reference,
    ):
        self.store = store
        self.provider = provider
        self.image_saver = image_saver
        self.resolve_reference = resolve_reference
        self._handlers: dict[str, Handler] = {
            "send-message": self._send_message,
            "chat-message": self._send_message,
            "new-chat": self._new_chat,
            "load-chat-session": self._load_chat_session,
            "get-chat-sessions": self._get_chat_sessions,
            "update-image-states": self._update_image_states,
            "get-chat-history": self._get_chat_history,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    async def handle(self, message: Any) -> dict:
        """Handle one command and return its response message."""
        if not isinstance(message, dict):
            return _error("Command must be an object")

        command = message.get("type")
        handler = self._handlers.get(command)
        if handler is None:
            return _error(f"Unknown command: {command}")

        logger.debug("Handling command: %s", command)
        try:
            return await handler(message)
        except SessionNotFoundError as e:
            logger.error("%s", e)
            return _error(str(e))
        except (ValueError, IndexError, TypeError) as e:
            logger.warning("Rejected %s command: %s", command, e)
            return _error(str(e))

    # ── Handlers ─────────────────────────────────────────────────────

    async def _send_message(self, message: dict) -> dict:
        text = message.get("text") or message.get("message")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Message text is required")

        if self.provider is None:
            return {"type": "chat-response", "response": NOT_CONFIGURED_RESPONSE}

        self.store.add_user_message(text)
        # The reply belongs to this session even if the UI switches meanwhile
        session_id = self.store.current_session_id
        try:
            result = await self.provider.generate_images(text, message.get("model"))
            images, saved_paths = await self._collect_images(result, text)
            if not images:
                raise ValueError("No image URLs or base64 data received from provider")
        except Exception as e:
            # Provider failures are recorded in the conversation, not raised
            logger.error("Error generating images: %s", e)
            self.store.add_assistant_message(f"❌ Error: {e}", session_id=session_id)
            return {"type": "chat-response", "response": f"❌ **Error**: {e}"}

        self.store.add_assistant_message(
            f'Generated {len(images)} image(s) for: "{text}"',
            ImageData(
                prompt=text,
                images=images,
                saved_file_paths=saved_paths,
                image_states=ImageStates.for_count(len(saved_paths)),
                usage=result.usage,
                cost=result.cost,
            ),
            session_id=session_id,
        )

        response = {
            "type": "image-response",
            "images": images,
            "prompt": text,
            "savedPaths": saved_paths,
        }
        if saved_paths:
            response["notification"] = (
                f"Generated {len(saved_paths)} image(s) and saved to {Path(saved_paths[0]).parent}"
            )
        return response

    async def _new_chat(self, message: dict) -> dict:
        session = await self.store.create_session()
        return {"type": "chat-cleared", "sessionId": session.id}

    async def _load_chat_session(self, message: dict) -> dict:
        session_id = message.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("sessionId is required")

        session = await self.store.switch_session(session_id)
        return {
            "type": "chat-history",
            "sessionId": session.id,
            "messages": self._messages_payload(session),
        }

    async def _get_chat_sessions(self, message: dict) -> dict:
        return {
            "type": "chat-sessions",
            "sessions": [serialize_summary(s) for s in self.store.list_summaries()],
            "currentSessionId": self.store.current_session_id,
        }

    async def _update_image_states(self, message: dict) -> dict:
        index = message.get("messageIndex")
        if not isinstance(index, int) or isinstance(index, bool):
            raise ValueError("messageIndex must be an integer")
        states = parse_image_states(message.get("imageStates"))

        session = self.store.current_session
        if session is None:
            raise ValueError("No current session")

        images = self.store.images
        applied = images.apply_states(session, index, states)
        response = {"type": "image-states-updated", "messageIndex": index, "applied": applied}

        if applied and images.deletions_pending:
            report = await images.drain_deletions()
            response["deletion"] = report.to_dict()
            response["notification"] = report.summary()
        return response

    async def _get_chat_history(self, message: dict) -> dict:
        session = self.store.current_session
        return {
            "type": "chat-history",
            "sessionId": self.store.current_session_id,
            "messages": self._messages_payload(session) if session else [],
        }

    # ── Private helpers ──────────────────────────────────────────────

    async def _collect_images(self, result: GenerationResult, prompt: str) -> tuple[list[str], list[str]]:
        images = []
        saved_paths = []
        for img in result.images:
            if img.url:
                images.append(img.url)
            elif img.base64:
                images.append(f"data:image/png;base64,{img.base64}")
                if self.image_saver is not None:
                    path = await asyncio.to_thread(self.image_saver.save, img.base64, prompt)
                    if path:
                        saved_paths.append(path)
        return images, saved_paths

    def _messages_payload(self, session: Session) -> list[dict]:
        payload = []
        for msg in session.messages:
            record = message_to_dict(msg)
            image_data = record.get("imageData")
            if image_data is not None:
                references = [self.resolve_reference(p) for p in image_data["savedFilePaths"]]
                image_data["references"] = references
                if not image_data["images"]:
                    # Reloaded sessions carry no inline payloads. Keep one slot
                    # per saved file so positions match imageStates.
                    image_data["images"] = [r or "" for r in references]
            payload.append(record)
        return payload


def parse_image_states(raw: Any) -> ImageStates:
    """Validate an ``imageStates`` payload from the UI."""
    if not isinstance(raw, dict):
        raise ValueError("imageStates must be an object")
    deleted = raw.get("deleted")
    hidden = raw.get("hidden")
    if not isinstance(deleted, list) or not isinstance(hidden, list):
        raise ValueError("imageStates needs 'deleted' and 'hidden' lists")
    if not all(isinstance(v, bool) for v in deleted + hidden):
        raise ValueError("imageStates flags must be booleans")
    return ImageStates(deleted=list(deleted), hidden=list(hidden))


def _error(message: str) -> dict:
    return {"type": "error", "error": message}
