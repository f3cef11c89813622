"""Owns the single hub connection of this client.

State machine::

    IDLE -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED ...
                  ^            |                |
                  +-- retry ---+-- drop --------+        close() -> CLOSED

An unexpected drop always returns to CONNECTING and retries at the fixed
interval of the reconnect policy. Only ``close()`` reaches CLOSED, and the
manual-close flag it sets suppresses every automatic reconnect.

The controller is a process-wide singleton per client: ``install()`` makes a
controller the current one and stops any previous instance first, so a UI
that rebuilds its views never ends up with a second transport.
"""

import asyncio
import logging
import time
from typing import Any, Callable, ClassVar, Dict, List, Optional

from krishi_chat.chat_config import ChatHubConfig
from krishi_chat.chat_errors import CredentialMissing, HubError, SendFailure
from krishi_chat.chat_models import ConnectionState, Credential
from krishi_chat.reconnect_policy import FixedDelayPolicy, ReconnectPolicy
from krishi_chat.session_identity import SessionIdentityManager
from krishi_chat.session_reclaimer import PreviousSessionReclaimer
from krishi_chat.transport import HubTransport, ResumeHints

logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionState, Optional[str]], Any]
TransportFactory = Callable[[], HubTransport]


class ConnectionController:
    """Connection lifecycle with start/stop guards and a fixed-delay reconnect loop."""

    _instance: ClassVar[Optional["ConnectionController"]] = None

    def __init__(
        self,
        *,
        config: ChatHubConfig,
        transport_factory: TransportFactory,
        identity: SessionIdentityManager,
        reclaimer: Optional[PreviousSessionReclaimer] = None,
        policy: Optional[ReconnectPolicy] = None,
    ):
        """Initialize controller.

        Args:
            config: Hub location and timeouts
            transport_factory: Creates a fresh transport for every connect attempt
            identity: Source of the session id and resume hints
            reclaimer: Optional cleanup of connections left by earlier runs
            policy: Retry policy for failed connects and unexpected drops
        """
        self.config = config
        self.state = ConnectionState.IDLE
        self.transport_connection_id: Optional[str] = None
        self.last_error: Optional[str] = None

        self._transport_factory = transport_factory
        self._identity = identity
        self._reclaimer = reclaimer
        self._policy = policy or FixedDelayPolicy(delay=config.retry_delay)
        self._transport: Optional[HubTransport] = None
        self._credential: Optional[Credential] = None

        self._starting = False
        self._stopping = False
        self._manual_close = False
        self._reclaimed_before_start = False
        self._attempt = 0
        self._retry_task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()

        self._status_listeners: List[StatusListener] = []
        self._event_handlers: Dict[str, List[Callable[..., Any]]] = {}

    # ── Singleton ownership ──────────────────────────────────────

    @classmethod
    def get(cls) -> Optional["ConnectionController"]:
        return cls._instance

    @classmethod
    async def install(cls, controller: "ConnectionController") -> "ConnectionController":
        """Make controller the current one, closing a stale previous instance."""
        stale = cls._instance
        if stale is controller:
            return controller
        if stale is not None:
            logger.info("[CONN] Replacing stale connection controller")
            await stale.close("replaced")
        cls._instance = controller
        return controller

    # ── Listeners ────────────────────────────────────────────────

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Register a hub event handler; it is attached to every transport this controller opens."""
        self._event_handlers.setdefault(event, []).append(handler)
        if self._transport is not None:
            self._transport.on(event, handler)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def manually_closed(self) -> bool:
        return self._manual_close

    @property
    def has_transport(self) -> bool:
        return self._transport is not None

    def _set_state(self, state: ConnectionState, error: Optional[str] = None) -> None:
        previous, self.state = self.state, state
        if state == ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if previous != state or error:
            logger.debug(f"[CONN] {previous.value} -> {state.value}" + (f" ({error})" if error else ""))
        for listener in list(self._status_listeners):
            listener(state, error)

    # ── Start ────────────────────────────────────────────────────

    async def start(self, credential: Optional[Credential]) -> bool:
        """Open the connection if it is not already open or opening.

        Returns:
            True if the controller is connected when this call returns

        Raises:
            CredentialMissing: If there is no token or user id to connect with
        """
        if credential is None or not credential.token or not credential.user_id:
            raise CredentialMissing("Auth token missing")
        while self._stopping:
            await asyncio.sleep(self.config.stop_contention_delay)
        if self._starting or self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            return self.is_connected

        self._credential = credential
        self._manual_close = False
        self._attempt = 0
        self._starting = True
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._connect_once()
        finally:
            self._starting = False
        return self.is_connected

    async def _connect_once(self) -> None:
        credential = self._credential
        identity = self._identity.ensure()
        previous_id = identity.previous_connection_id

        if not self._reclaimed_before_start:
            self._reclaimed_before_start = True
            if self._reclaimer is not None:
                await self._reclaimer.reclaim(credential.user_id, previous_id)

        await self._discard_transport()
        if self._manual_close:
            return
        transport = self._transport_factory()
        self._attach(transport)
        self._transport = transport

        hints = ResumeHints(session_id=identity.session_id, previous_connection_id=previous_id)
        try:
            await transport.connect(self.config.hub_url, hints, lambda: credential.token)
        except HubError as e:
            if self._transport is transport:
                self._transport = None
            if self._manual_close:
                return
            self.last_error = str(e)
            logger.warning(f"[CONN] Connect failed: {e}")
            self._set_state(ConnectionState.CONNECTING, self.last_error)
            self._schedule_retry()
            return

        if self._manual_close or self._transport is not transport:
            await transport.stop()
            return

        new_id = transport.connection_id
        self.transport_connection_id = new_id
        self.last_error = None
        self._attempt = 0
        if new_id:
            stale = self._identity.last_connection_info()
            self._identity.record_connection_id(new_id)
            self._identity.record_connection_info(new_id)
            if self._reclaimer is not None:
                stale_id = stale.connection_id if stale else previous_id
                self._reclaimer.reclaim_stale(credential.user_id, stale_id, new_id)
        logger.info(f"[CONN] Connected as {new_id} (resume hint: {previous_id})")
        self._set_state(ConnectionState.CONNECTED)

    def _attach(self, transport: HubTransport) -> None:
        for event, handlers in self._event_handlers.items():
            transport.off(event)
            for handler in handlers:
                transport.on(event, handler)
        transport.on_reconnecting(lambda error: self._on_reconnecting(transport, error))
        transport.on_reconnected(lambda connection_id: self._on_reconnected(transport, connection_id))
        transport.on_close(lambda error: self._on_close(transport, error))

    async def _discard_transport(self) -> None:
        """Stop a leftover transport so at most one is ever active."""
        stale, self._transport = self._transport, None
        if stale is not None:
            await stale.stop()

    # ── Retry loop ───────────────────────────────────────────────

    def _schedule_retry(self) -> None:
        if self._manual_close:
            return
        delay = self._policy.next_delay(self._attempt)
        self._attempt += 1
        if delay is None:
            logger.warning("[CONN] Reconnect policy gave up")
            self._set_state(ConnectionState.CLOSED, self.last_error)
            return
        self._cancel_retry()
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        if self._manual_close or self._starting or self.is_connected:
            return
        logger.info(f"[CONN] Retrying connect (attempt {self._attempt})")
        self._starting = True
        try:
            await self._connect_once()
        finally:
            self._starting = False

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ── Transport callbacks ──────────────────────────────────────

    def _on_reconnecting(self, transport: HubTransport, error: Optional[Exception]) -> None:
        if transport is not self._transport or self._manual_close:
            return
        logger.info(f"[CONN] Reconnecting: {error}")
        self._set_state(ConnectionState.RECONNECTING, str(error) if error else None)

    def _on_reconnected(self, transport: HubTransport, connection_id: Optional[str]) -> None:
        if transport is not self._transport or self._manual_close:
            return
        if connection_id:
            self.transport_connection_id = connection_id
            self._identity.record_connection_id(connection_id)
            self._identity.record_connection_info(connection_id)
        logger.info(f"[CONN] Reconnected as {connection_id}")
        self._set_state(ConnectionState.CONNECTED)

    def _on_close(self, transport: HubTransport, error: Optional[Exception]) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self.transport_connection_id = None
        if self._manual_close or self._stopping:
            return
        self.last_error = str(error) if error else "Connection closed"
        logger.warning(f"[CONN] Connection dropped: {self.last_error}")
        self._set_state(ConnectionState.CONNECTING, self.last_error)
        self._schedule_retry()

    # ── Close ────────────────────────────────────────────────────

    async def close(self, reason: str = "manual") -> None:
        """Close the connection for good and suppress automatic reconnects."""
        self._manual_close = True
        self._cancel_retry()
        transport = self._transport
        if transport is not None:
            self._stopping = True
            try:
                if transport.is_connected:
                    try:
                        await asyncio.wait_for(
                            transport.invoke("Disconnect", {"reason": reason, "ts": int(time.time() * 1000)}),
                            timeout=self.config.disconnect_timeout,
                        )
                    except (HubError, asyncio.TimeoutError) as e:
                        logger.debug(f"[CONN] Disconnect notification failed: {e}")
                await transport.stop()
            finally:
                self._stopping = False
                if self._transport is transport:
                    self._transport = None
        self.transport_connection_id = None
        if ConnectionController._instance is self:
            ConnectionController._instance = None
        logger.info(f"[CONN] Closed ({reason})")
        self._set_state(ConnectionState.CLOSED)

    # ── Invocation ───────────────────────────────────────────────

    async def invoke(self, method: str, *args: Any) -> Any:
        """Invoke a hub method on the open connection only.

        Raises:
            SendFailure: If not connected or the invocation fails
        """
        transport = self._transport
        if not self.is_connected or transport is None:
            raise SendFailure(f"Cannot invoke '{method}' while {self.state.value}")
        try:
            return await transport.invoke(method, *args)
        except HubError as e:
            raise SendFailure(str(e)) from e

    async def send(self, method: str, *args: Any) -> Any:
        """Invoke a hub method, connecting first if necessary.

        Raises:
            SendFailure: If no connection can be established or the invocation fails
        """
        if not self.is_connected:
            if self._starting or self.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                try:
                    await asyncio.wait_for(self._connected.wait(), timeout=self.config.send_connect_timeout)
                except asyncio.TimeoutError:
                    raise SendFailure(f"Timed out waiting for a connection to invoke '{method}'")
            else:
                try:
                    await self.start(self._credential)
                except CredentialMissing as e:
                    raise SendFailure(str(e)) from e
        return await self.invoke(method, *args)
