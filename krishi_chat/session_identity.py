"""Logical chat session identity that survives restarts of the client."""
import logging
import time
from typing import Optional
from uuid import uuid4

from pydantic import ValidationError

from krishi_chat.chat_models import ConnectionInfo, SessionIdentity
from krishi_chat.storage import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "liveChatSessionId"
PREVIOUS_CONNECTION_KEY = "liveChatPrevConnectionId"
CONNECTION_INFO_KEY = "lastChatConnectionInfo"


class SessionIdentityManager:
    """Derives and persists the session id and the last-known connection id.

    Storage failures never propagate. If the store cannot be read or written,
    the session id lives only in this object and resume hints are simply
    absent.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._session_id: Optional[str] = None

    def ensure(self) -> SessionIdentity:
        """Return the persisted identity, creating and persisting one if absent."""
        if self._session_id is None:
            self._session_id = self._read(SESSION_ID_KEY)
            if not self._session_id:
                self._session_id = str(uuid4())
                self._write(SESSION_ID_KEY, self._session_id)
                logger.info(f"[SESSION] Created session {self._session_id}")
        return SessionIdentity(
            session_id=self._session_id,
            previous_connection_id=self._read(PREVIOUS_CONNECTION_KEY) or None,
        )

    def record_connection_id(self, connection_id: str) -> None:
        """Persist connection_id as the resume hint for the next connect."""
        self._write(PREVIOUS_CONNECTION_KEY, connection_id)

    def record_connection_info(self, connection_id: str) -> None:
        info = ConnectionInfo(
            connection_id=connection_id,
            session_id=self._session_id,
            ts=int(time.time() * 1000),
        )
        self._write(CONNECTION_INFO_KEY, info.model_dump_json(by_alias=True))

    def last_connection_info(self) -> Optional[ConnectionInfo]:
        raw = self._read(CONNECTION_INFO_KEY)
        if not raw:
            return None
        try:
            return ConnectionInfo.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"[SESSION] Ignoring unreadable connection info: {e}")
            return None

    def clear(self) -> None:
        """Forget the session entirely (logout)."""
        self._session_id = None
        for key in (SESSION_ID_KEY, PREVIOUS_CONNECTION_KEY, CONNECTION_INFO_KEY):
            try:
                self._store.remove(key)
            except Exception as e:
                logger.warning(f"[SESSION] Failed to remove '{key}': {e}")

    def _read(self, key: str) -> Optional[str]:
        try:
            return self._store.get(key)
        except Exception as e:
            logger.warning(f"[SESSION] Failed to read '{key}': {e}")
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._store.set(key, value)
        except Exception as e:
            logger.warning(f"[SESSION] Failed to persist '{key}', continuing without it: {e}")
