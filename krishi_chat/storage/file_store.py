"""Device-scoped key-value store backed by a JSON file."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from .key_value_store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path.home() / ".krishi-chat" / "state.json"


class JsonFileKeyValueStore(KeyValueStore):
    """Key-value store persisted as a single JSON object on disk.

    Writes go to a temporary file which then replaces the state file, so a
    crash never leaves a half-written state behind.
    """

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path else DEFAULT_STATE_FILE

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"[STORE] State file {self.path} is corrupt, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)
