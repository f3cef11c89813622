"""REST client for the marketplace chat endpoints.

Covers history, counterpart list, counterpart metadata, counterpart lookup
by product and the fire-and-forget disconnect notification. Response bodies
are parsed tolerantly because the backend is inconsistent about envelopes
and content types.
"""
import asyncio
import base64
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from krishi_chat.chat_config import ChatHubConfig
from krishi_chat.chat_errors import (
    ChatRestError,
    HistoryFetchFailure,
    ListPollFailure,
    MetadataFetchFailure,
)
from krishi_chat.chat_models import DisconnectRequest
from krishi_chat.utils.record_parsing import (
    clean_envelope,
    parse_counterpart_id,
    parse_counterpart_ids,
    strip_quotes,
    unwrap_list,
)

logger = logging.getLogger(__name__)

TokenFactory = Callable[[], Optional[str]]

_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class ChatRestClient:
    """Async client for the chat REST endpoints, authenticated with a bearer token."""

    def __init__(self, config: ChatHubConfig, token_factory: TokenFactory, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._token_factory = token_factory
        self._session = session
        self._owns_session = session is None
        self._background: set[asyncio.Task] = set()

    def _headers(self) -> Dict[str, str]:
        token = self._token_factory()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            )
            self._owns_session = True
        return self._session

    async def _get(self, url: str) -> Tuple[int, str, bytes]:
        """GET url, returning status, content type and raw body."""
        async with self._get_session().get(url, headers=self._headers()) as resp:
            body = await resp.read()
            return resp.status, resp.headers.get("Content-Type", ""), body

    @staticmethod
    def _decode(content_type: str, body: bytes) -> Any:
        """JSON-decode if the response says JSON, otherwise return the text."""
        text = body.decode("utf-8", errors="replace")
        if "application/json" in content_type:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text
        return text

    # ── History ──────────────────────────────────────────────────

    async def get_history(self, counterpart_id: str) -> List[Any]:
        """Raw history records exchanged with counterpart_id.

        Raises:
            HistoryFetchFailure: On network errors or a non-success status
        """
        url = self.config.url_for("history", counterpart_id=counterpart_id)
        try:
            status, content_type, body = await self._get(url)
        except _NETWORK_ERRORS as e:
            raise HistoryFetchFailure(f"Failed to load history: {e}") from e
        if status >= 400:
            raise HistoryFetchFailure("Failed to load history", status)
        return unwrap_list(self._decode(content_type, body))

    # ── Counterparts ─────────────────────────────────────────────

    async def get_counterparts(self) -> List[str]:
        """Ids of the counterparts this user can chat with. A 404 means none.

        Raises:
            ListPollFailure: On network errors or any other error status
        """
        url = self.config.url_for("counterparts")
        try:
            status, content_type, body = await self._get(url)
        except _NETWORK_ERRORS as e:
            raise ListPollFailure(f"Unable to load customers: {e}") from e
        if status == 404:
            return []
        if status >= 400:
            raise ListPollFailure(f"Failed ({status})", status)
        return parse_counterpart_ids(self._decode(content_type, body))

    async def get_counterpart_for_product(self, product_id: str) -> str:
        """Id of the farmer selling product_id.

        Raises:
            ChatRestError: If the lookup fails or no farmer is available
        """
        url = self.config.url_for("farmer_for_product", product_id=product_id)
        try:
            status, content_type, body = await self._get(url)
        except _NETWORK_ERRORS as e:
            raise ChatRestError(f"Cannot get farmer id: {e}") from e
        if status >= 400:
            raise ChatRestError("Cannot get farmer id", status)
        counterpart_id = parse_counterpart_id(self._decode(content_type, body))
        if not counterpart_id:
            raise ChatRestError("Farmer offline", status)
        return counterpart_id

    # ── Metadata ─────────────────────────────────────────────────

    async def get_user_name(self, user_id: str) -> Optional[str]:
        """Display name of user_id, None if the backend has none.

        Raises:
            MetadataFetchFailure: On network errors or a non-success status
        """
        url = self.config.url_for("user_name", user_id=user_id)
        try:
            status, content_type, body = await self._get(url)
        except _NETWORK_ERRORS as e:
            raise MetadataFetchFailure(f"Failed to load name of {user_id}: {e}") from e
        if status >= 400:
            raise MetadataFetchFailure(f"Failed to load name of {user_id}", status)
        decoded = self._decode(content_type, body)
        name: Any = None
        if isinstance(decoded, str):
            name = clean_envelope(decoded)
        elif isinstance(decoded, dict):
            name = decoded.get("data") or decoded.get("name") or decoded.get("userName") or decoded.get("fullName")
        if not isinstance(name, str):
            return None
        return strip_quotes(name) or None

    async def get_user_avatar(self, user_id: str) -> Optional[str]:
        """Avatar of user_id as a ``data:`` URI or an http(s) URL, None if absent.

        Raises:
            MetadataFetchFailure: On network errors or a non-success status
        """
        url = self.config.url_for("user_image", user_id=user_id)
        try:
            status, content_type, body = await self._get(url)
        except _NETWORK_ERRORS as e:
            raise MetadataFetchFailure(f"Failed to load avatar of {user_id}: {e}") from e
        if status >= 400:
            raise MetadataFetchFailure(f"Failed to load avatar of {user_id}", status)
        if content_type.startswith("image/"):
            mime = content_type.split(";")[0].strip()
            return f"data:{mime};base64,{base64.b64encode(body).decode('ascii')}"
        text = strip_quotes(body.decode("utf-8", errors="replace"))
        if text.startswith("data:image/") or text.startswith("http://") or text.startswith("https://"):
            return text
        return None

    # ── Disconnect notification ──────────────────────────────────

    async def post_disconnect(self, request: DisconnectRequest) -> None:
        """Ask the server to drop a connection.

        Raises:
            ChatRestError: On network errors or an error status
        """
        url = self.config.url_for("disconnect")
        payload = request.model_dump(by_alias=True, exclude_none=True)
        try:
            async with self._get_session().post(url, json=payload, headers=self._headers()) as resp:
                if resp.status >= 400:
                    raise ChatRestError(f"Disconnect notification rejected ({resp.status})", resp.status)
        except _NETWORK_ERRORS as e:
            raise ChatRestError(f"Disconnect notification failed: {e}") from e
        logger.debug(f"[REST] Disconnect sent for {request.connection_id} ({request.reason})")

    def notify_disconnect(self, request: DisconnectRequest) -> asyncio.Task:
        """Send a disconnect notification without waiting for it (e.g. on unload).

        Failures are logged, never raised.
        """
        task = asyncio.create_task(self._post_quietly(request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _post_quietly(self, request: DisconnectRequest) -> bool:
        try:
            await self.post_disconnect(request)
        except ChatRestError as e:
            logger.debug(f"[REST] Ignoring failed disconnect notification: {e}")
            return False
        return True

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget requests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
