from abc import ABC, abstractmethod
from typing import Optional


class KeyValueStore(ABC):
    """Abstract client-side key-value store for chat state.

    Implementations may raise on storage failures; callers that must not fail
    (session identity, snapshots) catch and degrade.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Get the value stored under key, or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key if present."""
        pass
