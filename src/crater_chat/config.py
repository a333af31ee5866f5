"""Platform-aware path resolution and environment-driven settings."""

import os
import sys
from pathlib import Path

DEFAULT_DEBOUNCE_MS = 500

_FALSY = {"0", "false", "no", "off", ""}


def get_storage_path() -> Path:
    """Return the private directory holding session records."""
    env = os.environ.get("CRATER_STORAGE_PATH")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "crater"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "crater"
    else:  # Linux
        return Path.home() / ".config" / "crater"


def get_image_save_path() -> Path:
    """Return the directory generated images are written to."""
    env = os.environ.get("CRATER_IMAGE_DIR")
    if env:
        return Path(env)

    return Path.cwd() / "images"


def get_debounce_delay() -> float:
    """Return the debounce window in seconds."""
    raw = os.environ.get("CRATER_DEBOUNCE_MS")
    if not raw:
        return DEFAULT_DEBOUNCE_MS / 1000
    try:
        return max(int(raw), 0) / 1000
    except ValueError:
        return DEFAULT_DEBOUNCE_MS / 1000


def is_persistence_enabled() -> bool:
    """Return False when the diagnostic kill switch drops scheduled writes."""
    raw = os.environ.get("CRATER_DISABLE_PERSISTENCE")
    if raw is None:
        return True
    return raw.strip().lower() in _FALSY


def is_auto_save_enabled() -> bool:
    """Return True if generated images should be written to disk."""
    raw = os.environ.get("CRATER_AUTO_SAVE_IMAGES")
    if raw is None:
        return True
    return raw.strip().lower() not in _FALSY
