"""Per-session file storage tier.

Each session lives in its own JSON file under ``<storage>/sessions/``.
Writing one small file per session replaced rewriting the whole key-value
payload on every change, which had become a visible source of latency.
"""

import json
import os
from pathlib import Path
from urllib.parse import quote

from ..tier import StorageTier


class SessionFileTier(StorageTier):
    """Reads and writes ``<base>/<session_id>.json``."""

    name = "session_file"

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def path_for(self, session_id: str) -> Path:
        # Percent-encoding keeps distinct ids in distinct files
        safe_id = quote(session_id, safe="")
        return self.base_path / f"{safe_id}.json"

    def read(self, session_id: str) -> dict | None:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not hold a session object")
        return data

    def write(self, session_id: str, data: dict) -> None:
        target = self.path_for(session_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(f"{target.suffix}.tmp")
        payload = json.dumps(data, ensure_ascii=False)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_path, target)
