"""SignalR JSON hub protocol over an aiohttp websocket.

Implements the subset of the protocol the chat hub uses: negotiate,
handshake, invocations in both directions, completions, pings and close
messages. Records are JSON objects terminated by the ASCII record separator.
"""
import asyncio
import json
import logging
from enum import IntEnum
from typing import Any, Dict, List, Optional

import aiohttp
from yarl import URL

from krishi_chat.chat_errors import ConnectFailure, HubError
from krishi_chat.reconnect_policy import ReconnectPolicy, ScheduledDelayPolicy
from krishi_chat.transport.hub_transport import CredentialFactory, HubTransport, ResumeHints, TransportState

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\x1e"
HANDSHAKE_REQUEST = {"protocol": "json", "version": 1}

_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, ValueError)


class MessageType(IntEnum):
    INVOCATION = 1
    STREAM_ITEM = 2
    COMPLETION = 3
    STREAM_INVOCATION = 4
    CANCEL_INVOCATION = 5
    PING = 6
    CLOSE = 7


def encode_record(record: Dict[str, Any]) -> str:
    return json.dumps(record) + RECORD_SEPARATOR


def decode_records(data: str) -> List[Dict[str, Any]]:
    """Split a websocket frame into its JSON records."""
    records = []
    for raw in data.split(RECORD_SEPARATOR):
        if not raw.strip():
            continue
        try:
            records.append(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.warning(f"[HUB] Dropping malformed record: {e}")
    return records


class SignalRWebSocketTransport(HubTransport):
    """Hub transport speaking the SignalR JSON protocol with automatic reconnect.

    After an unexpected drop the transport walks its reconnect policy,
    firing ``on_reconnecting`` once and ``on_reconnected`` with the new
    connection id on success, or ``on_close`` when the policy gives up.
    """

    def __init__(
        self,
        *,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
        invoke_timeout: float = 30.0,
        handshake_timeout: float = 15.0,
        keepalive_interval: float = 15.0,
    ):
        """Initialize the transport.

        Args:
            reconnect_policy: Automatic reconnect schedule, ScheduledDelayPolicy by default
            session: Optional shared aiohttp session (otherwise one is owned)
            invoke_timeout: Seconds to wait for an invocation's completion
            handshake_timeout: Seconds to wait for the handshake response
            keepalive_interval: Seconds between protocol pings sent to the hub
        """
        super().__init__()
        self._reconnect_policy = reconnect_policy if reconnect_policy is not None else ScheduledDelayPolicy()
        self._session = session
        self._owns_session = session is None
        self._invoke_timeout = invoke_timeout
        self._handshake_timeout = handshake_timeout
        self._keepalive_interval = keepalive_interval

        self._url: Optional[str] = None
        self._hints: Optional[ResumeHints] = None
        self._credential_factory: Optional[CredentialFactory] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._invocation_id = 0
        self._stopping = False
        self._leftover: List[Dict[str, Any]] = []
        self._close_error: Optional[Exception] = None
        self._allow_reconnect = True

    async def connect(self, url: str, hints: ResumeHints, credential_factory: CredentialFactory) -> None:
        if self.state != TransportState.DISCONNECTED:
            raise HubError(f"Cannot start a connection that is {self.state.value}")
        self._url = url
        self._hints = hints
        self._credential_factory = credential_factory
        self._stopping = False
        self.state = TransportState.CONNECTING
        try:
            await self._open()
        except HubError:
            self.state = TransportState.DISCONNECTED
            await self._close_session()
            raise
        self.state = TransportState.CONNECTED
        logger.info(f"[HUB] Connected to {url} as {self.connection_id}")

    async def invoke(self, method: str, *args: Any) -> Any:
        if self.state != TransportState.CONNECTED or self._ws is None:
            raise HubError(f"Cannot invoke '{method}': connection is {self.state.value}")
        self._invocation_id += 1
        invocation_id = str(self._invocation_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = future
        try:
            await self._send_record({
                "type": MessageType.INVOCATION,
                "invocationId": invocation_id,
                "target": method,
                "arguments": list(args),
            })
            return await asyncio.wait_for(future, timeout=self._invoke_timeout)
        except asyncio.TimeoutError:
            raise HubError(f"Invocation of '{method}' timed out")
        except (aiohttp.ClientError, ConnectionError) as e:
            raise HubError(f"Invocation of '{method}' failed: {e}") from e
        finally:
            self._pending.pop(invocation_id, None)

    async def stop(self) -> None:
        if self.state == TransportState.DISCONNECTED and self._ws is None:
            return
        self._stopping = True
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        await self._teardown_socket()
        self._fail_pending(HubError("Connection stopped"))
        self.connection_id = None
        self.state = TransportState.DISCONNECTED
        await self._close_session()
        logger.info(f"[HUB] Stopped connection to {self._url}")
        self._fire_close(None)

    # ── Connection setup ─────────────────────────────────────────

    def _auth_headers(self) -> Dict[str, str]:
        token = self._credential_factory() if self._credential_factory else ""
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _open(self) -> None:
        """Negotiate, open the websocket and complete the handshake."""
        session = self._ensure_session()
        headers = self._auth_headers()
        query = self._hints.to_query() if self._hints else {}
        try:
            negotiation = await self._negotiate(session, headers, query)
            ws_url = self._websocket_url(negotiation, query)
            ws = await session.ws_connect(ws_url, headers=headers)
            await self._handshake(ws)
        except _NETWORK_ERRORS as e:
            raise ConnectFailure(f"Failed to connect to hub: {e}") from e
        self._ws = ws
        self.connection_id = negotiation.get("connectionId")
        self._close_error = None
        self._allow_reconnect = True
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if self._keepalive_interval > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive(ws))

    async def _negotiate(self, session: aiohttp.ClientSession, headers: Dict[str, str], query: Dict[str, str]) -> Dict[str, Any]:
        url = URL(self._url.rstrip("/") + "/negotiate").update_query({**query, "negotiateVersion": "1"})
        async with session.post(url, headers=headers) as resp:
            if resp.status != 200:
                raise ConnectFailure(f"Negotiation failed with status {resp.status}")
            body = await resp.json(content_type=None)
        if not isinstance(body, dict):
            raise ConnectFailure("Negotiation returned an invalid response")
        if body.get("error"):
            raise ConnectFailure(f"Negotiation rejected: {body['error']}")
        return body

    def _websocket_url(self, negotiation: Dict[str, Any], query: Dict[str, str]) -> URL:
        url = URL(self._url)
        url = url.with_scheme("wss" if url.scheme == "https" else "ws")
        token = negotiation.get("connectionToken") or negotiation.get("connectionId")
        params = dict(query)
        if token:
            params["id"] = token
        return url.update_query(params)

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        await ws.send_str(encode_record(HANDSHAKE_REQUEST))
        try:
            msg = await asyncio.wait_for(ws.receive(), timeout=self._handshake_timeout)
        except asyncio.TimeoutError:
            await ws.close()
            raise ConnectFailure("Handshake timed out")
        if msg.type != aiohttp.WSMsgType.TEXT:
            await ws.close()
            raise ConnectFailure(f"Handshake failed: unexpected {msg.type.name} frame")
        records = decode_records(msg.data)
        if not records:
            await ws.close()
            raise ConnectFailure("Handshake failed: empty response")
        if records[0].get("error"):
            await ws.close()
            raise ConnectFailure(f"Handshake rejected: {records[0]['error']}")
        self._leftover = records[1:]

    # ── Reading ──────────────────────────────────────────────────

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        error: Optional[Exception] = None
        leftover, self._leftover = self._leftover, []
        for record in leftover:
            await self._handle_record(ws, record)
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                for record in decode_records(msg.data):
                    await self._handle_record(ws, record)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = ws.exception()
                break
        if ws is not self._ws or self._stopping:
            return
        await self._connection_lost(self._close_error or error, self._allow_reconnect)

    async def _handle_record(self, ws: aiohttp.ClientWebSocketResponse, record: Dict[str, Any]) -> None:
        msg_type = record.get("type")
        if msg_type == MessageType.INVOCATION:
            self._dispatch(str(record.get("target", "")), list(record.get("arguments") or []))
        elif msg_type == MessageType.COMPLETION:
            future = self._pending.get(str(record.get("invocationId")))
            if future is not None and not future.done():
                if record.get("error"):
                    future.set_exception(HubError(record["error"]))
                else:
                    future.set_result(record.get("result"))
        elif msg_type == MessageType.PING:
            pass
        elif msg_type == MessageType.CLOSE:
            if record.get("error"):
                self._close_error = HubError(f"Server closed the connection with an error: {record['error']}")
            self._allow_reconnect = bool(record.get("allowReconnect", False))
            await ws.close()
        else:
            logger.debug(f"[HUB] Ignoring record of type {msg_type}")

    async def _keepalive(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await ws.send_str(encode_record({"type": MessageType.PING}))
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"[HUB] Keepalive ping failed: {e}")
                return

    async def _send_record(self, record: Dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise HubError("Connection is not open")
        await self._ws.send_str(encode_record(record))

    # ── Reconnecting ─────────────────────────────────────────────

    async def _connection_lost(self, error: Optional[Exception], allow_reconnect: bool) -> None:
        """Called from the reader task when the socket ends unexpectedly."""
        logger.warning(f"[HUB] Connection {self.connection_id} lost: {error}")
        await self._teardown_socket()
        self._fail_pending(HubError("Invocation canceled due to the underlying connection being closed."))
        self.connection_id = None

        if not allow_reconnect:
            self.state = TransportState.DISCONNECTED
            await self._close_session()
            self._fire_close(error)
            return

        self.state = TransportState.RECONNECTING
        self._fire_reconnecting(error)
        attempt = 0
        while not self._stopping:
            delay = self._reconnect_policy.next_delay(attempt)
            if delay is None:
                break
            await asyncio.sleep(delay)
            if self._stopping:
                return
            try:
                await self._open()
            except HubError as e:
                attempt += 1
                error = e
                logger.info(f"[HUB] Reconnect attempt {attempt} failed: {e}")
                continue
            self.state = TransportState.CONNECTED
            logger.info(f"[HUB] Reconnected as {self.connection_id}")
            self._fire_reconnected(self.connection_id)
            return

        if self._stopping:
            return
        self.state = TransportState.DISCONNECTED
        await self._close_session()
        self._fire_close(error)

    async def _teardown_socket(self) -> None:
        keepalive, self._keepalive_task = self._keepalive_task, None
        if keepalive is not None:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    def _fail_pending(self, error: HubError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
