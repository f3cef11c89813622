"""Best-effort cleanup of server-side connections left behind by earlier runs."""
import asyncio
import logging
import time
from typing import Optional

from krishi_chat.api import ChatRestClient
from krishi_chat.chat_errors import ChatRestError
from krishi_chat.chat_models import DisconnectRequest
from krishi_chat.session_identity import SessionIdentityManager

logger = logging.getLogger(__name__)

PRE_START_REASON = "pre_start_force_replace"
POST_CONNECT_REASON = "post_connect_cleanup"


class PreviousSessionReclaimer:
    """Asks the server to drop an earlier connection of the same logical session.

    Prevents a refreshed or duplicated client from appearing online twice
    until the server's idle timeout notices. Nothing here ever raises or
    holds up a connect for longer than ``timeout``.
    """

    def __init__(self, rest: ChatRestClient, identity: SessionIdentityManager, timeout: float = 2.0):
        self._rest = rest
        self._identity = identity
        self._timeout = timeout

    def _request(self, user_id: str, connection_id: str, reason: str, replacement: Optional[str] = None) -> DisconnectRequest:
        return DisconnectRequest(
            user_id=user_id,
            connection_id=connection_id,
            session_id=self._identity.ensure().session_id,
            reason=reason,
            timestamp=int(time.time() * 1000),
            replacement_connection_id=replacement,
        )

    async def reclaim(self, user_id: str, last_known_connection_id: Optional[str]) -> bool:
        """Request termination of last_known_connection_id before a new connect.

        Returns:
            True if the server acknowledged the request
        """
        if not last_known_connection_id:
            return False
        request = self._request(user_id, last_known_connection_id, PRE_START_REASON)
        try:
            await asyncio.wait_for(self._rest.post_disconnect(request), timeout=self._timeout)
        except (ChatRestError, asyncio.TimeoutError) as e:
            logger.warning(f"[RECLAIM] Pre-start reclaim of {last_known_connection_id} failed: {e}")
            return False
        logger.info(f"[RECLAIM] Released previous connection {last_known_connection_id}")
        return True

    def reclaim_stale(self, user_id: str, stale_connection_id: Optional[str], replacement_connection_id: Optional[str]) -> Optional[asyncio.Task]:
        """Fire-and-forget cleanup after a connect, when the server assigned a new id."""
        if not stale_connection_id or stale_connection_id == replacement_connection_id:
            return None
        logger.debug(f"[RECLAIM] Post-connect cleanup of {stale_connection_id} -> {replacement_connection_id}")
        request = self._request(user_id, stale_connection_id, POST_CONNECT_REASON, replacement_connection_id)
        return self._rest.notify_disconnect(request)
