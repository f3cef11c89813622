"""Tests for counterpart metadata and the counterpart list poller."""
import asyncio

import pytest

from krishi_chat.chat_errors import ListPollFailure
from krishi_chat.counterpart_directory import CounterpartDirectory
from krishi_chat.counterpart_poller import CounterpartListPoller

from .conftest import wait_until


class TestCounterpartDirectory:
    """Lazy name and avatar resolution."""

    @pytest.mark.asyncio
    async def test_ensure_fetches_name_and_avatar(self, rest):
        rest.names["B7"] = "Sita Devi"
        rest.avatars["B7"] = "https://cdn.test/b7.png"
        directory = CounterpartDirectory(rest)

        meta = await directory.ensure("B7")

        assert meta.display_name == "Sita Devi"
        assert meta.avatar_url == "https://cdn.test/b7.png"
        assert directory.display_name_for("B7") == "Sita Devi"
        assert directory.initials_for("B7") == "SD"
        assert directory.avatar_for("B7") == "https://cdn.test/b7.png"

    @pytest.mark.asyncio
    async def test_partial_metadata_is_cached_and_never_refetched(self, rest):
        rest.names["B7"] = "Sita"
        directory = CounterpartDirectory(rest)

        await directory.ensure("B7")
        await directory.ensure("B7")

        assert rest.meta_calls == [("name", "B7"), ("avatar", "B7")]
        assert directory.avatar_for("B7") is None

    @pytest.mark.asyncio
    async def test_concurrent_ensures_share_one_fetch(self, rest):
        rest.names["B7"] = "Sita"
        directory = CounterpartDirectory(rest)

        first, second = await asyncio.gather(directory.ensure("B7"), directory.ensure("B7"))

        assert first is second
        assert len(rest.meta_calls) == 2

    @pytest.mark.asyncio
    async def test_total_failure_leaves_entry_absent(self, rest):
        directory = CounterpartDirectory(rest, fallback_name="Customer")

        assert await directory.ensure("B9") is None

        assert "B9" not in directory
        assert directory.display_name_for("B9") == "Customer"
        assert directory.initials_for("B9") == "?"
        await directory.ensure("B9")
        assert len(rest.meta_calls) == 4

    @pytest.mark.asyncio
    async def test_invalidate_allows_refetch(self, rest):
        rest.names["B7"] = "Sita"
        directory = CounterpartDirectory(rest)
        await directory.ensure("B7")

        rest.names["B7"] = "Sita Devi"
        directory.invalidate("B7")
        await directory.ensure("B7")

        assert directory.display_name_for("B7") == "Sita Devi"

    @pytest.mark.asyncio
    async def test_schedule_ensure_skips_known_ids(self, rest):
        rest.names["B7"] = "Sita"
        directory = CounterpartDirectory(rest)
        task = directory.schedule_ensure("B7")
        await task

        assert directory.schedule_ensure("B7") is None


class TestCounterpartListPoller:
    """Periodic counterpart list refresh."""

    @pytest.mark.asyncio
    async def test_poll_sorts_and_deduplicates(self, rest):
        rest.counterparts = ["B3", "B1", "B3", "B2"]
        poller = CounterpartListPoller(rest)
        changes = []
        poller.add_change_listener(changes.append)

        assert await poller.poll()

        assert poller.counterpart_ids == ["B1", "B2", "B3"]
        assert changes == [["B1", "B2", "B3"]]
        assert poller.last_updated is not None

    @pytest.mark.asyncio
    async def test_unchanged_set_does_not_notify(self, rest):
        rest.counterparts = ["B1", "B2"]
        poller = CounterpartListPoller(rest)
        changes = []
        poller.add_change_listener(changes.append)
        await poller.poll()

        rest.counterparts = ["B2", "B1", "B1"]
        assert not await poller.poll()
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_empty_list_is_not_an_error(self, rest):
        rest.counterparts = []
        poller = CounterpartListPoller(rest)

        await poller.poll()

        assert poller.counterpart_ids == []
        assert poller.last_error is None

    @pytest.mark.asyncio
    async def test_error_status_is_reported_without_clearing_list(self, rest):
        rest.counterparts = ["B1"]
        poller = CounterpartListPoller(rest)
        await poller.poll()

        rest.counterparts = ListPollFailure("Failed (500)", 500)
        assert not await poller.poll()

        assert poller.last_error == "Failed (500)"
        assert poller.counterpart_ids == ["B1"]

    @pytest.mark.asyncio
    async def test_overlapping_polls_are_skipped(self, rest):
        rest.counterparts = ["B1"]
        rest.counterpart_delay = 0.02
        poller = CounterpartListPoller(rest)

        results = await asyncio.gather(poller.poll(), poller.poll())

        assert results == [True, False]
        assert rest.counterpart_calls == 1

    @pytest.mark.asyncio
    async def test_new_ids_are_prefetched_up_to_limit(self, rest):
        rest.counterparts = [f"B{i:02d}" for i in range(20)]
        for counterpart_id in rest.counterparts:
            rest.names[counterpart_id] = f"Buyer {counterpart_id}"
        directory = CounterpartDirectory(rest)
        poller = CounterpartListPoller(rest, directory, prefetch_limit=15)

        await poller.poll()
        await wait_until(lambda: len(rest.meta_calls) == 30)
        await asyncio.sleep(0.01)

        assert "B14" in directory
        assert "B15" not in directory
        assert len(rest.meta_calls) == 30

    @pytest.mark.asyncio
    async def test_start_polls_immediately_and_repeats(self, rest):
        rest.counterparts = ["B1"]
        poller = CounterpartListPoller(rest, interval=0.01)

        poller.start()
        await wait_until(lambda: rest.counterpart_calls >= 3)
        await poller.stop()
        calls = rest.counterpart_calls
        await asyncio.sleep(0.03)

        assert not poller.running
        assert rest.counterpart_calls == calls
        assert poller.counterpart_ids == ["B1"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_polling(self, rest):
        rest.counterparts = ["B1"]
        poller = CounterpartListPoller(rest, interval=0.01)
        seen = []

        def broken(ids):
            raise RuntimeError("listener bug")

        poller.add_change_listener(broken)
        poller.add_change_listener(seen.append)

        assert await poller.poll()
        assert seen == [["B1"]]

        poller.start()
        rest.counterparts = ["B1", "B2"]
        await wait_until(lambda: len(seen) == 2)
        calls = rest.counterpart_calls
        await wait_until(lambda: rest.counterpart_calls > calls + 1)

        assert poller.running
        await poller.stop()
