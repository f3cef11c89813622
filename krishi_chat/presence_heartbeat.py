"""Keepalive RPC that stops idle hub connections from being dropped."""
import logging
import time
from typing import Optional

from krishi_chat.chat_errors import SendFailure
from krishi_chat.chat_models import ConnectionState
from krishi_chat.connection_controller import ConnectionController
from krishi_chat.utils.periodic_task import PeriodicTask

logger = logging.getLogger(__name__)


class PresenceHeartbeat:
    """Invokes ``Ping({ts})`` at a fixed interval while the controller is connected."""

    def __init__(self, controller: ConnectionController, interval: float = 25.0):
        self._controller = controller
        self._timer = PeriodicTask("presence-heartbeat", interval, self.beat)
        self.beats = 0
        controller.add_status_listener(self._on_status)

    @property
    def running(self) -> bool:
        return self._timer.running

    def _on_status(self, state: ConnectionState, error: Optional[str]) -> None:
        if state == ConnectionState.CONNECTED:
            self._timer.start()
        else:
            self._timer.cancel()

    async def beat(self) -> bool:
        """Send one ping; failures are ignored."""
        try:
            await self._controller.invoke("Ping", {"ts": int(time.time() * 1000)})
        except SendFailure as e:
            logger.debug(f"[HEARTBEAT] Ping failed: {e}")
            return False
        self.beats += 1
        return True

    async def stop(self) -> None:
        await self._timer.stop()
