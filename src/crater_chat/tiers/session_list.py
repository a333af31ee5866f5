"""Full session-list storage tier.

The oldest format persisted every session, messages included, as a single
list under ``crater.chatSessions``. Finding one session means scanning the
whole list, so this tier is only consulted when nothing newer answers.
"""

import logging

from ..tier import StorageTier
from .keyvalue import SESSIONS_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class SessionListTier(StorageTier):
    """Scans the legacy ``crater.chatSessions`` list for a session."""

    name = "session_list"
    read_only = True

    def __init__(self, store: KeyValueStore):
        self.store = store

    def read(self, session_id: str) -> dict | None:
        sessions = self.store.get(SESSIONS_KEY)
        if not isinstance(sessions, list):
            return None

        for entry in sessions:
            if isinstance(entry, dict) and entry.get("id") == session_id:
                return entry
        return None
