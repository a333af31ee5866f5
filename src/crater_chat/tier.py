"""Abstract base class for session storage tiers."""

from abc import ABC, abstractmethod


class StorageTier(ABC):
    """Base class for one generation of session storage.

    Each tier (per-session file, key-value entry, full session list)
    implements this interface so the backend can try them in order.
    Reads may raise; the backend treats any exception as a miss.
    """

    name: str  # "session_file", "key_value", "session_list"
    read_only: bool = False

    @abstractmethod
    def read(self, session_id: str) -> dict | None:
        """Return the raw record for a session, or None if absent."""
        ...

    def write(self, session_id: str, data: dict) -> None:
        """Persist the raw record for a session."""
        raise NotImplementedError(f"{self.name} tier is read-only")
