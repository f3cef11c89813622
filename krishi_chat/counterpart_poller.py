"""Periodic refresh of the counterparts a seller can chat with."""
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from krishi_chat.api import ChatRestClient
from krishi_chat.chat_errors import ListPollFailure
from krishi_chat.chat_models import utc_now
from krishi_chat.counterpart_directory import CounterpartDirectory
from krishi_chat.utils.periodic_task import PeriodicTask

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[str]], Any]


class CounterpartListPoller:
    """Polls the counterpart list at a fixed interval while the chat is open.

    At most one poll is in flight. Listeners only hear about a new list when
    the set of ids actually changed.
    """

    def __init__(
        self,
        rest: ChatRestClient,
        directory: Optional[CounterpartDirectory] = None,
        interval: float = 5.0,
        prefetch_limit: int = 15,
    ):
        self._rest = rest
        self._directory = directory
        self.prefetch_limit = prefetch_limit
        self.counterpart_ids: List[str] = []
        self.last_error: Optional[str] = None
        self.last_updated: Optional[datetime] = None
        self._in_flight = False
        self._listeners: List[ChangeListener] = []
        self._timer = PeriodicTask("counterpart-poll", interval, self.poll, run_immediately=True)

    @property
    def running(self) -> bool:
        return self._timer.running

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        """Stop polling without waiting for a poll in flight."""
        self._timer.cancel()

    async def stop(self) -> None:
        await self._timer.stop()

    async def poll(self) -> bool:
        """Fetch the list once.

        Returns:
            True if the set of counterparts changed
        """
        if self._in_flight:
            return False
        self._in_flight = True
        try:
            try:
                ids = await self._rest.get_counterparts()
            except ListPollFailure as e:
                self.last_error = str(e)
                logger.warning(f"[POLL] {e}")
                return False
            self.last_error = None
            self.last_updated = utc_now()

            unique = sorted(set(ids))
            if unique == self.counterpart_ids:
                return False
            self.counterpart_ids = unique
            logger.info(f"[POLL] {len(unique)} counterparts")
            if self._directory is not None:
                for counterpart_id in unique[: self.prefetch_limit]:
                    self._directory.schedule_ensure(counterpart_id)
            for listener in list(self._listeners):
                try:
                    listener(list(unique))
                except Exception:
                    logger.exception("[POLL] Change listener failed")
            return True
        finally:
            self._in_flight = False
