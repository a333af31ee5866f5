"""Storage tiers in read-preference order."""

from pathlib import Path

from ..tier import StorageTier
from .keyvalue import KeyValueStore, KeyValueTier
from .session_file import SessionFileTier
from .session_list import SessionListTier


def get_default_tiers(storage_path: Path, kv_store: KeyValueStore | None = None) -> list[StorageTier]:
    """Return the tiers for a storage area, fastest first."""
    storage_path = Path(storage_path)
    if kv_store is None:
        kv_store = KeyValueStore(storage_path / "state.db")
    return [
        SessionFileTier(storage_path / "sessions"),
        KeyValueTier(kv_store),
        SessionListTier(kv_store),
    ]
