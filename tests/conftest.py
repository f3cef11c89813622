"""Test configuration, fakes and fixtures."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from krishi_chat.chat_config import ChatHubConfig
from krishi_chat.chat_errors import ChatRestError, ConnectFailure, HubError, MetadataFetchFailure
from krishi_chat.chat_models import Credential, DisconnectRequest
from krishi_chat.connection_controller import ConnectionController
from krishi_chat.session_identity import SessionIdentityManager
from krishi_chat.session_reclaimer import PreviousSessionReclaimer
from krishi_chat.storage import MemoryKeyValueStore
from krishi_chat.transport import HubTransport, ResumeHints, TransportState


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


# ── Hub transport fake ───────────────────────────────────────────

class FakeTransport(HubTransport):
    """In-memory transport driven by the test through FakeHub."""

    def __init__(self, hub: "FakeHub"):
        super().__init__()
        self.hub = hub
        self.url: Optional[str] = None
        self.hints: Optional[ResumeHints] = None
        self.token: Optional[str] = None
        self.invocations: List[tuple] = []

    async def connect(self, url, hints, credential_factory) -> None:
        self.url = url
        self.hints = hints
        self.token = credential_factory()
        self.state = TransportState.CONNECTING
        await asyncio.sleep(self.hub.connect_delay)
        if self.hub.fail_connects > 0:
            self.hub.fail_connects -= 1
            self.state = TransportState.DISCONNECTED
            raise ConnectFailure("Failed to connect to hub: refused")
        self.state = TransportState.CONNECTED
        self.connection_id = self.hub.next_connection_id()
        self.hub.record_active()

    async def invoke(self, method: str, *args: Any) -> Any:
        if not self.is_connected:
            raise HubError(f"Cannot invoke '{method}': connection is {self.state.value}")
        self.invocations.append((method, args))
        self.hub.invocations.append((method, args))
        if self.hub.invoke_delay:
            await asyncio.sleep(self.hub.invoke_delay)
        if method in self.hub.fail_methods:
            raise HubError(f"Invocation of '{method}' failed")
        return None

    async def stop(self) -> None:
        if self.state == TransportState.DISCONNECTED:
            return
        self.state = TransportState.DISCONNECTED
        self.connection_id = None
        self.hub.stops += 1
        self._fire_close(None)

    # Simulation helpers

    def drop(self, error: Optional[Exception] = None) -> None:
        self.state = TransportState.DISCONNECTED
        self.connection_id = None
        self._fire_close(error or HubError("Connection lost"))

    def begin_reconnect(self) -> None:
        self.state = TransportState.RECONNECTING
        self._fire_reconnecting(HubError("Connection lost"))

    def finish_reconnect(self, connection_id: str) -> None:
        self.state = TransportState.CONNECTED
        self.connection_id = connection_id
        self._fire_reconnected(connection_id)

    def deliver(self, target: str, *args: Any) -> None:
        self._dispatch(target, list(args))


class FakeHub:
    """Transport factory that keeps every transport it created."""

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.invocations: List[tuple] = []
        self.fail_connects = 0
        self.fail_methods: set = set()
        self.connect_delay = 0.0
        self.invoke_delay = 0.0
        self.stops = 0
        self.max_active = 0
        self._counter = 0

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def next_connection_id(self) -> str:
        self._counter += 1
        return f"conn-{self._counter}"

    @property
    def active(self) -> List[FakeTransport]:
        return [t for t in self.transports if t.state != TransportState.DISCONNECTED]

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]

    def record_active(self) -> None:
        self.max_active = max(self.max_active, len(self.active))


# ── REST fake ────────────────────────────────────────────────────

class FakeRestClient:
    """Stand-in for ChatRestClient with scripted responses."""

    def __init__(self):
        self.history: Dict[str, List[Any]] = {}
        self.history_script: Dict[str, List[tuple]] = {}
        self.history_calls: List[str] = []
        self.counterparts: Any = []
        self.counterpart_calls = 0
        self.counterpart_delay = 0.0
        self.names: Dict[str, Any] = {}
        self.avatars: Dict[str, Any] = {}
        self.meta_calls: List[tuple] = []
        self.products: Dict[str, str] = {}
        self.disconnects: List[DisconnectRequest] = []
        self.notified: List[DisconnectRequest] = []
        self.disconnect_error: Optional[Exception] = None
        self.disconnect_delay = 0.0

    async def get_history(self, counterpart_id: str) -> List[Any]:
        self.history_calls.append(counterpart_id)
        script = self.history_script.get(counterpart_id)
        if script:
            delay, result = script.pop(0)
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
            result = self.history.get(counterpart_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def get_counterparts(self) -> List[str]:
        self.counterpart_calls += 1
        await asyncio.sleep(self.counterpart_delay)
        if isinstance(self.counterparts, Exception):
            raise self.counterparts
        return list(self.counterparts)

    async def get_counterpart_for_product(self, product_id: str) -> str:
        if product_id not in self.products:
            raise ChatRestError("Farmer offline", 200)
        return self.products[product_id]

    async def _meta(self, kind: str, table: Dict[str, Any], user_id: str) -> Optional[str]:
        self.meta_calls.append((kind, user_id))
        await asyncio.sleep(0)
        value = table.get(user_id)
        if value is None:
            raise MetadataFetchFailure(f"Failed to load {kind} of {user_id}", 404)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_user_name(self, user_id: str) -> Optional[str]:
        return await self._meta("name", self.names, user_id)

    async def get_user_avatar(self, user_id: str) -> Optional[str]:
        return await self._meta("avatar", self.avatars, user_id)

    async def post_disconnect(self, request: DisconnectRequest) -> None:
        self.disconnects.append(request)
        await asyncio.sleep(self.disconnect_delay)
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def notify_disconnect(self, request: DisconnectRequest) -> asyncio.Task:
        self.notified.append(request)
        return asyncio.create_task(asyncio.sleep(0))

    async def drain(self) -> None:
        pass

    async def close(self) -> None:
        pass


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def config() -> ChatHubConfig:
    """Config with timers shortened for tests."""
    return ChatHubConfig(
        api_base="http://hub.test",
        retry_delay=0.01,
        stop_contention_delay=0.005,
        reclaim_timeout=0.2,
        disconnect_timeout=0.2,
        send_connect_timeout=0.5,
        heartbeat_interval=0.02,
        poll_interval=0.02,
        snapshot_debounce=0.01,
    )


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
def rest() -> FakeRestClient:
    return FakeRestClient()


@pytest.fixture
def credential() -> Credential:
    return Credential(token="token-f1", user_id="F1", full_name="Ram Pande")


@pytest.fixture
def identity(kv) -> SessionIdentityManager:
    return SessionIdentityManager(kv)


@pytest.fixture
def controller(config, hub, identity, rest) -> ConnectionController:
    reclaimer = PreviousSessionReclaimer(rest, identity, timeout=config.reclaim_timeout)
    return ConnectionController(config=config, transport_factory=hub, identity=identity, reclaimer=reclaimer)


@pytest.fixture(autouse=True)
def reset_controller_singleton():
    yield
    ConnectionController._instance = None
