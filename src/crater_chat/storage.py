"""Tiered session storage.

Reads try each tier in order (per-session file, key-value entry, full
session-list scan) and the first parseable, schema-valid record wins. A
tier that raises or returns garbage is a miss, never an error. Writes
always go to the first writable tier.

The session index (ordered summaries plus the current session id) is kept
separately in ``index.json`` because listing sessions must stay cheap.
"""

import asyncio
import json
import logging
import os
import sqlite3
from pathlib import Path

from .core import Session, SessionSummary, generate_message_id, generate_session_id, generate_title, utcnow
from .serializer import (
    SerializationError,
    deserialize_session,
    deserialize_summary,
    serialize_session,
    serialize_summary,
)
from .tier import StorageTier
from .tiers import get_default_tiers
from .tiers.keyvalue import CURRENT_SESSION_KEY, LEGACY_HISTORY_KEY, SESSIONS_KEY, KeyValueStore

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"


class StorageBackend:
    """Durable read/write of sessions across storage generations."""

    def __init__(
        self,
        storage_path: Path,
        tiers: list[StorageTier] | None = None,
        kv_store: KeyValueStore | None = None,
    ):
        self.storage_path = Path(storage_path)
        self.kv_store = kv_store or KeyValueStore(self.storage_path / "state.db")
        self.tiers = tiers if tiers is not None else get_default_tiers(self.storage_path, self.kv_store)
        self.index_path = self.storage_path / INDEX_FILENAME

    # ── Sessions ─────────────────────────────────────────────────────

    async def load_session(self, session_id: str) -> Session | None:
        """Return the session from the first tier that has a valid copy."""
        for tier in self.tiers:
            try:
                data = await asyncio.to_thread(tier.read, session_id)
            except Exception as e:
                logger.warning("Tier %s failed to read %s: %s", tier.name, session_id, e)
                continue
            if data is None:
                continue

            try:
                session = deserialize_session(data)
            except SerializationError as e:
                logger.warning("Tier %s holds an invalid record for %s: %s", tier.name, session_id, e)
                continue
            if session.id != session_id:
                logger.warning("Tier %s returned %s when asked for %s", tier.name, session.id, session_id)
                continue

            logger.debug("Loaded session %s from %s tier", session_id, tier.name)
            return session

        logger.info("No stored copy of session %s", session_id)
        return None

    async def save_session(self, session_id: str, data: dict) -> bool:
        """Write a serialized session to the preferred tier."""
        tier = self.preferred_tier()
        try:
            await asyncio.to_thread(tier.write, session_id, data)
        except (OSError, sqlite3.Error, TypeError, ValueError) as e:
            logger.error("Failed to write session %s to %s tier: %s", session_id, tier.name, e)
            return False
        logger.debug("Wrote session %s to %s tier", session_id, tier.name)
        return True

    def preferred_tier(self) -> StorageTier:
        for tier in self.tiers:
            if not tier.read_only:
                return tier
        raise RuntimeError("No writable storage tier configured")

    # ── Index ────────────────────────────────────────────────────────

    async def load_index(self) -> tuple[list[SessionSummary], str | None] | None:
        """Return (summaries, current session id), or None if nothing is stored."""
        try:
            raw = await asyncio.to_thread(self._read_index_file)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read %s: %s", self.index_path, e)
            raw = None

        if isinstance(raw, dict) and isinstance(raw.get("sessions"), list):
            return _parse_summaries(raw["sessions"]), _as_id(raw.get("currentSessionId"))

        # Older releases kept the list and pointer in the key-value store
        try:
            sessions = await asyncio.to_thread(self.kv_store.get, SESSIONS_KEY)
            current = await asyncio.to_thread(self.kv_store.get, CURRENT_SESSION_KEY)
        except (sqlite3.Error, json.JSONDecodeError) as e:
            logger.warning("Failed to read session list from key-value store: %s", e)
            return None

        if not isinstance(sessions, list):
            return None
        logger.info("Loaded session index from key-value store (%d entries)", len(sessions))
        return _parse_summaries(sessions), _as_id(current)

    async def save_index(self, summaries: list[SessionSummary], current_id: str | None) -> bool:
        payload = {
            "sessions": [serialize_summary(s) for s in summaries],
            "currentSessionId": current_id,
        }
        try:
            await asyncio.to_thread(self._write_index_file, payload)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to write session index: %s", e)
            return False
        return True

    # ── Legacy migration ─────────────────────────────────────────────

    async def migrate_legacy_history(self) -> Session | None:
        """Turn a pre-session ``crater.chatHistory`` list into one session.

        The migrated session is written to the preferred tier and the legacy
        key is cleared. Returns None when there is nothing to migrate.
        """
        try:
            legacy = await asyncio.to_thread(self.kv_store.get, LEGACY_HISTORY_KEY)
        except (sqlite3.Error, json.JSONDecodeError) as e:
            logger.warning("Failed to read legacy chat history: %s", e)
            return None
        if not isinstance(legacy, list) or not legacy:
            return None

        now = utcnow().isoformat()
        messages = []
        for entry in legacy:
            if not isinstance(entry, dict):
                continue
            record = dict(entry)
            record.setdefault("id", generate_message_id())
            record.setdefault("messageType", "text")
            record.setdefault("timestamp", now)
            messages.append(record)

        try:
            session = deserialize_session({
                "id": generate_session_id(),
                "title": "",
                "messages": messages,
                "createdAt": messages[0]["timestamp"] if messages else now,
                "lastActivity": messages[-1]["timestamp"] if messages else now,
            })
        except SerializationError as e:
            logger.warning("Legacy chat history is malformed, leaving it in place: %s", e)
            return None
        session.title = generate_title(session.messages)

        if not await self.save_session(session.id, serialize_session(session)):
            return None
        try:
            await asyncio.to_thread(self.kv_store.delete, LEGACY_HISTORY_KEY)
        except sqlite3.Error as e:
            logger.warning("Failed to clear legacy chat history: %s", e)

        logger.info("Migrated %d legacy messages into session %s", len(session.messages), session.id)
        return session

    # ── Private helpers ──────────────────────────────────────────────

    def _read_index_file(self) -> dict | None:
        if not self.index_path.exists():
            return None
        return json.loads(self.index_path.read_text(encoding="utf-8"))

    def _write_index_file(self, payload: dict) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.index_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False))
        os.replace(tmp_path, self.index_path)


def _parse_summaries(entries: list) -> list[SessionSummary]:
    summaries = []
    for entry in entries:
        try:
            summaries.append(deserialize_summary(entry))
        except SerializationError as e:
            logger.warning("Skipping malformed session index entry: %s", e)
    return summaries


def _as_id(value) -> str | None:
    return value if isinstance(value, str) and value else None
