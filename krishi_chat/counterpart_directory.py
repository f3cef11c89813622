"""Lazy cache of counterpart display names and avatars."""
import asyncio
import logging
from typing import Dict, Optional

from krishi_chat.api import ChatRestClient
from krishi_chat.chat_errors import MetadataFetchFailure
from krishi_chat.chat_models import CounterpartMeta
from krishi_chat.utils.record_parsing import initials

logger = logging.getLogger(__name__)


class CounterpartDirectory:
    """Resolves each counterpart's metadata at most once.

    Name and avatar are fetched independently; either may be missing. An id
    with cached metadata, even partial, is never fetched again until it is
    invalidated. If both requests fail nothing is cached and a later
    ``ensure`` tries again.
    """

    def __init__(self, rest: ChatRestClient, fallback_name: str = "Unknown"):
        self._rest = rest
        self.fallback_name = fallback_name
        self._entries: Dict[str, CounterpartMeta] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def get(self, counterpart_id: str) -> Optional[CounterpartMeta]:
        return self._entries.get(str(counterpart_id))

    def __contains__(self, counterpart_id: object) -> bool:
        return str(counterpart_id) in self._entries

    async def ensure(self, counterpart_id: str) -> Optional[CounterpartMeta]:
        """Cached metadata of counterpart_id, fetching it if absent."""
        key = str(counterpart_id)
        if key in self._entries:
            return self._entries[key]
        return await asyncio.shield(self.schedule_ensure(key))

    def schedule_ensure(self, counterpart_id: str) -> Optional[asyncio.Task]:
        """Start resolving counterpart_id in the background if it is unknown."""
        key = str(counterpart_id)
        if key in self._entries:
            return None
        if key in self._inflight:
            return self._inflight[key]
        task = asyncio.create_task(self._fetch(key))
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return task

    async def _fetch(self, key: str) -> Optional[CounterpartMeta]:
        name_result, avatar_result = await asyncio.gather(
            self._rest.get_user_name(key),
            self._rest.get_user_avatar(key),
            return_exceptions=True,
        )
        failures = [r for r in (name_result, avatar_result) if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, MetadataFetchFailure):
                raise failure
            logger.debug(f"[DIRECTORY] {failure}")
        if len(failures) == 2:
            return None
        meta = CounterpartMeta(
            id=key,
            display_name=None if isinstance(name_result, BaseException) else name_result,
            avatar_url=None if isinstance(avatar_result, BaseException) else avatar_result,
        )
        self._entries[key] = meta
        logger.debug(f"[DIRECTORY] Resolved {key}: {meta.display_name!r}")
        return meta

    def invalidate(self, counterpart_id: Optional[str] = None) -> None:
        """Forget one counterpart, or everything if no id is given."""
        if counterpart_id is None:
            self._entries.clear()
        else:
            self._entries.pop(str(counterpart_id), None)

    def name_of(self, counterpart_id: str) -> Optional[str]:
        """Resolved display name, None if unknown."""
        meta = self._entries.get(str(counterpart_id))
        return meta.display_name if meta is not None else None

    def display_name_for(self, counterpart_id: str) -> str:
        return self.name_of(counterpart_id) or self.fallback_name

    def initials_for(self, counterpart_id: str) -> str:
        meta = self._entries.get(str(counterpart_id))
        return initials(meta.display_name if meta else None)

    def avatar_for(self, counterpart_id: str) -> Optional[str]:
        meta = self._entries.get(str(counterpart_id))
        return meta.avatar_url if meta else None
