"""ChatClient: wires session, connection, conversations and counterparts together.

A seller client polls its list of buyers and talks to one of them at a
time. A buyer client talks to the farmer of one product. Both use the same
components::

    client = ChatClient.for_seller(config, credential, store=JsonFileKeyValueStore())
    await client.open()
    await client.select("buyer-42")
    await client.send("Namaste!")
    ...
    await client.aclose()
"""
import asyncio
import logging
import time
from typing import Optional

from pydantic import ValidationError

from krishi_chat.api import ChatRestClient
from krishi_chat.chat_config import ChatHubConfig
from krishi_chat.chat_errors import ChatRestError, CredentialMissing
from krishi_chat.chat_models import ChatMessage, ConnectionState, ConversationSnapshot, Credential, DisconnectRequest
from krishi_chat.connection_controller import ConnectionController, TransportFactory
from krishi_chat.conversation_store import ConversationStore
from krishi_chat.counterpart_directory import CounterpartDirectory
from krishi_chat.counterpart_poller import CounterpartListPoller
from krishi_chat.presence_heartbeat import PresenceHeartbeat
from krishi_chat.reconnect_policy import ScheduledDelayPolicy
from krishi_chat.session_identity import SessionIdentityManager
from krishi_chat.session_reclaimer import PreviousSessionReclaimer
from krishi_chat.storage import KeyValueStore, MemoryKeyValueStore
from krishi_chat.transport import HubTransport, SignalRWebSocketTransport

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "liveChatPersist_v1"
UNLOAD_REASON = "beforeunload"

AUTH_MISSING = "Auth token missing. Please re-login."
RECONNECTING = "Reconnecting..."
RECONNECTED = "Reconnected"
CONNECT_FAILED = "Failed to connect"


class ChatClient:
    """Facade over one chat session of the signed-in user."""

    def __init__(
        self,
        config: ChatHubConfig,
        credential: Optional[Credential],
        *,
        store: Optional[KeyValueStore] = None,
        multi_counterpart: bool = True,
        transport_factory: Optional[TransportFactory] = None,
        rest: Optional[ChatRestClient] = None,
    ):
        """Initialize client.

        Args:
            config: Hub location, timers and limits
            credential: Bearer token and identity; None shows a re-login notice on open
            store: Persistent key-value store for session and snapshot (memory if None)
            multi_counterpart: True for sellers, False for buyers
            transport_factory: Creates hub transports (SignalR over aiohttp if None)
            rest: REST client override
        """
        self.config = config
        self.credential = credential
        self.multi_counterpart = multi_counterpart
        self.last_error: Optional[str] = None
        self._kv = store or MemoryKeyValueStore()

        self.rest = rest or ChatRestClient(config, self._token)
        self.identity = SessionIdentityManager(self._kv)
        self.reclaimer = PreviousSessionReclaimer(self.rest, self.identity, timeout=config.reclaim_timeout)
        self.controller = ConnectionController(
            config=config,
            transport_factory=transport_factory or self._create_transport,
            identity=self.identity,
            reclaimer=self.reclaimer,
        )
        self.directory = CounterpartDirectory(self.rest, fallback_name="Customer" if multi_counterpart else "Farmer")
        self.store = ConversationStore(
            rest=self.rest,
            controller=self.controller,
            local_user_id=credential.user_id if credential else "",
            local_display_name=credential.display_name if credential else "You",
            multi_counterpart=multi_counterpart,
            directory=self.directory,
        )
        self.poller = (
            CounterpartListPoller(self.rest, self.directory, config.poll_interval, config.meta_prefetch_limit)
            if multi_counterpart
            else None
        )
        self.heartbeat = PresenceHeartbeat(self.controller, config.heartbeat_interval)

        self.controller.on("ReceiveMessage", self.store.handle_receive_message)
        self.controller.add_status_listener(self._on_status)
        self.store.add_change_listener(self._on_change)

        self._was_connected = False
        self._restored = False
        self._save_task: Optional[asyncio.Task] = None

    @classmethod
    def for_seller(cls, config: ChatHubConfig, credential: Optional[Credential], **kwargs) -> "ChatClient":
        return cls(config, credential, multi_counterpart=True, **kwargs)

    @classmethod
    def for_buyer(cls, config: ChatHubConfig, credential: Optional[Credential], **kwargs) -> "ChatClient":
        return cls(config, credential, multi_counterpart=False, **kwargs)

    def _token(self) -> Optional[str]:
        return self.credential.token if self.credential else None

    def _create_transport(self) -> HubTransport:
        return SignalRWebSocketTransport(
            reconnect_policy=ScheduledDelayPolicy(delays=list(self.config.transport_reconnect_delays)),
            invoke_timeout=self.config.invoke_timeout,
            handshake_timeout=self.config.request_timeout,
        )

    @property
    def state(self) -> ConnectionState:
        return self.controller.state

    @property
    def focused_id(self) -> Optional[str]:
        return self.store.focused_id

    def _require_credential(self) -> Credential:
        """The credential to connect with.

        Raises:
            CredentialMissing: If the token or user id is absent
        """
        if self.credential is None or not self.credential.token or not self.credential.user_id:
            raise CredentialMissing(AUTH_MISSING)
        return self.credential

    # ── Lifecycle ────────────────────────────────────────────────

    async def open(self, counterpart_id: Optional[str] = None) -> bool:
        """Open the chat, optionally straight into the conversation with counterpart_id.

        Without a counterpart, the conversation of the last snapshot is
        restored if there is one. A missing credential shows a re-login
        notice instead of raising.

        Returns:
            True if the hub connection is up
        """
        if counterpart_id:
            self.store.focus(counterpart_id)
        try:
            credential = self._require_credential()
        except CredentialMissing as e:
            self.last_error = str(e)
            logger.warning("[CLIENT] Cannot open chat without credentials")
            self.store.add_system_message(AUTH_MISSING)
            return False

        await ConnectionController.install(self.controller)
        if counterpart_id is None:
            counterpart_id = self._restore_snapshot()
        if self.poller is not None:
            self.poller.start()

        connected = await self.controller.start(credential)
        if counterpart_id:
            self.directory.schedule_ensure(counterpart_id)
            await self.store.load_history(counterpart_id)
        return connected

    async def open_for_product(self, product_id: str) -> bool:
        """Open the buyer chat with the farmer who sells product_id."""
        try:
            self._require_credential()
            farmer_id = await self.rest.get_counterpart_for_product(product_id)
        except (CredentialMissing, ChatRestError) as e:
            self.last_error = str(e)
            logger.warning(f"[CLIENT] No chat for product {product_id}: {e}")
            return False
        return await self.open(farmer_id)

    async def select(self, counterpart_id: str) -> bool:
        """Bring the conversation with counterpart_id into focus and load its history."""
        self.store.focus(counterpart_id)
        self.directory.schedule_ensure(counterpart_id)
        return await self.store.load_history(counterpart_id)

    async def send(self, text: str, counterpart_id: Optional[str] = None) -> ChatMessage:
        """Send text to counterpart_id or the focused counterpart.

        Raises:
            ValueError: If no conversation is open or text is blank
        """
        target = counterpart_id or self.store.focused_id
        if not target:
            raise ValueError("No conversation is open")
        return await self.store.send(target, text)

    async def close(self, reason: str = "manual") -> None:
        """Close the chat; no reconnect happens until the next ``open``."""
        self._cancel_save()
        if self.poller is not None:
            await self.poller.stop()
        await self.heartbeat.stop()
        await self.controller.close(reason)
        self._was_connected = False
        self._remove_snapshot()

    async def logout(self) -> None:
        """Close and forget the session, snapshot and cached counterparts."""
        await self.close("logout")
        self.identity.clear()
        self.store.clear()
        self.directory.invalidate()
        self._restored = False

    def notify_unload(self) -> Optional[asyncio.Task]:
        """The process is going away: persist state now and tell the server without waiting."""
        self._cancel_save()
        self.save_snapshot()
        connection_id = self.controller.transport_connection_id
        if self.credential is None or not connection_id:
            return None
        request = DisconnectRequest(
            user_id=self.credential.user_id,
            connection_id=connection_id,
            session_id=self.identity.ensure().session_id,
            reason=UNLOAD_REASON,
            timestamp=int(time.time() * 1000),
        )
        return self.rest.notify_disconnect(request)

    async def aclose(self) -> None:
        """Close the chat and release network resources."""
        await self.close()
        await self.rest.close()

    # ── Status ───────────────────────────────────────────────────

    def _on_status(self, state: ConnectionState, error: Optional[str]) -> None:
        if state == ConnectionState.RECONNECTING:
            self.store.add_system_message(RECONNECTING)
        elif state == ConnectionState.CONNECTING and error:
            self.store.add_system_message(RECONNECTING if self._was_connected else CONNECT_FAILED)
        elif state == ConnectionState.CONNECTED:
            if self._was_connected:
                self.store.add_system_message(RECONNECTED)
            self._was_connected = True
        elif state == ConnectionState.CLOSED:
            # also reached when another client replaces this one's controller
            if self.poller is not None:
                self.poller.cancel()
            self._cancel_save()
            self._was_connected = False

    # ── Snapshot ─────────────────────────────────────────────────

    def _on_change(self, counterpart_id: str) -> None:
        if counterpart_id != self.store.focused_id:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.save_snapshot()
            return
        self._cancel_save()
        self._save_task = asyncio.create_task(self._save_later())

    async def _save_later(self) -> None:
        await asyncio.sleep(self.config.snapshot_debounce)
        self._save_task = None
        self.save_snapshot()

    def _cancel_save(self) -> None:
        task, self._save_task = self._save_task, None
        if task is not None:
            task.cancel()

    def save_snapshot(self) -> None:
        snapshot = self.store.snapshot(self.config.snapshot_limit)
        try:
            self._kv.set(SNAPSHOT_KEY, snapshot.model_dump_json(by_alias=True))
        except Exception as e:
            logger.warning(f"[CLIENT] Failed to persist conversation snapshot: {e}")

    def _remove_snapshot(self) -> None:
        try:
            self._kv.remove(SNAPSHOT_KEY)
        except Exception as e:
            logger.warning(f"[CLIENT] Failed to remove conversation snapshot: {e}")

    def _restore_snapshot(self) -> Optional[str]:
        if self._restored:
            return None
        self._restored = True
        try:
            raw = self._kv.get(SNAPSHOT_KEY)
        except Exception as e:
            logger.warning(f"[CLIENT] Failed to read conversation snapshot: {e}")
            return None
        if not raw:
            return None
        try:
            snapshot = ConversationSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"[CLIENT] Ignoring unreadable conversation snapshot: {e}")
            return None
        return self.store.restore(snapshot)
