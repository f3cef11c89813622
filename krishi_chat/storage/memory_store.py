from typing import Dict, Optional

from .key_value_store import KeyValueStore


class MemoryKeyValueStore(KeyValueStore):
    """Key-value store living in process memory. Scope is the process ("tab")."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values.keys())
