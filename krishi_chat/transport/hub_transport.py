"""Abstract duplex hub transport.

A transport owns exactly one logical connection to the chat hub. It delivers
server-to-client invocations to registered handlers, performs client-to-server
invocations and reports reconnect and close events through callbacks.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

CredentialFactory = Callable[[], str]
EventHandler = Callable[..., Any]


class TransportState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ResumeHints(BaseModel):
    """Query hints that let the hub link a new connection to an earlier one."""
    session_id: str
    previous_connection_id: Optional[str] = None
    force_replace: bool = True

    def to_query(self) -> Dict[str, str]:
        query = {"sessionId": self.session_id}
        if self.force_replace:
            query["forceReplace"] = "1"
        if self.previous_connection_id:
            query["previousConnectionId"] = self.previous_connection_id
            query["resume"] = "1"
        query["_"] = str(int(time.time() * 1000))
        return query


class HubTransport(ABC):
    """Base class for hub transports with handler and callback bookkeeping."""

    def __init__(self):
        self.state = TransportState.DISCONNECTED
        self.connection_id: Optional[str] = None
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._reconnecting_callbacks: List[Callable[[Optional[Exception]], Any]] = []
        self._reconnected_callbacks: List[Callable[[Optional[str]], Any]] = []
        self._close_callbacks: List[Callable[[Optional[Exception]], Any]] = []
        self._handler_tasks: set[asyncio.Task] = set()

    @abstractmethod
    async def connect(self, url: str, hints: ResumeHints, credential_factory: CredentialFactory) -> None:
        """Open the connection. Raises HubError on failure."""
        pass

    @abstractmethod
    async def invoke(self, method: str, *args: Any) -> Any:
        """Invoke a hub method and wait for its completion. Raises HubError on failure."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Close the connection without reconnecting; fires the close callbacks."""
        pass

    @property
    def is_connected(self) -> bool:
        return self.state == TransportState.CONNECTED

    # ── Handler registration ─────────────────────────────────────

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler; event names are matched case-insensitively."""
        self._handlers.setdefault(event.lower(), []).append(handler)

    def off(self, event: str, handler: Optional[EventHandler] = None) -> None:
        """Remove one handler, or all handlers of ``event`` if none is given."""
        if handler is None:
            self._handlers.pop(event.lower(), None)
            return
        handlers = self._handlers.get(event.lower(), [])
        if handler in handlers:
            handlers.remove(handler)

    def on_reconnecting(self, callback: Callable[[Optional[Exception]], Any]) -> None:
        self._reconnecting_callbacks.append(callback)

    def on_reconnected(self, callback: Callable[[Optional[str]], Any]) -> None:
        self._reconnected_callbacks.append(callback)

    def on_close(self, callback: Callable[[Optional[Exception]], Any]) -> None:
        self._close_callbacks.append(callback)

    # ── Dispatch ─────────────────────────────────────────────────

    def _dispatch(self, target: str, arguments: List[Any]) -> None:
        handlers = list(self._handlers.get(target.lower(), []))
        if not handlers:
            logger.debug(f"[HUB] No handler registered for '{target}'")
            return
        for handler in handlers:
            try:
                result = handler(*arguments)
            except Exception:
                logger.exception(f"[HUB] Handler for '{target}' raised")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)

    def _fire_reconnecting(self, error: Optional[Exception]) -> None:
        for callback in list(self._reconnecting_callbacks):
            callback(error)

    def _fire_reconnected(self, connection_id: Optional[str]) -> None:
        for callback in list(self._reconnected_callbacks):
            callback(connection_id)

    def _fire_close(self, error: Optional[Exception]) -> None:
        for callback in list(self._close_callbacks):
            callback(error)
