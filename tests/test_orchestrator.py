"""
Tests for the Orchestrator: manifest diffing, status reporting and the retry tick.
"""

import asyncio

import pytest

from signage_cache.core.orchestrator import ItemStatus, create_orchestrator
from signage_cache.exceptions import DownloadError
from signage_cache.storage.cache_store import CacheStore

from .conftest import FakeDownloader


def _orchestrator(config, downloader, clock=None, **kwargs):
    if clock is not None:
        kwargs["clock"] = clock
    return create_orchestrator(config, downloader=downloader, **kwargs)


async def _settle(orchestrator):
    await asyncio.wait_for(orchestrator.wait_idle(), timeout=2)


class TestSync:
    @pytest.mark.asyncio
    async def test_first_sync_downloads_everything(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        items = [descriptor_factory(name) for name in ("a", "b", "c")]

        created = orchestrator.sync(items)

        assert len(created) == 3
        assert set(orchestrator.status.values()) == {ItemStatus.DOWNLOADING}

        await _settle(orchestrator)

        assert orchestrator.status == {i.url: ItemStatus.READY for i in items}
        assert orchestrator.progress == {i.url: 100.0 for i in items}
        for item in items:
            assert orchestrator.playable_path(item.url).exists()
        summary = orchestrator.summary()
        assert summary.ready == 3
        assert summary.percentage == 100.0
        assert summary.settled
        assert orchestrator.stats().total_files == 3

    @pytest.mark.asyncio
    async def test_cached_items_are_ready_without_network(
        self, config, downloader, descriptor_factory
    ):
        items = [descriptor_factory(name) for name in ("a", "b")]
        first = _orchestrator(config, downloader)
        await first.initialize()
        first.sync(items)
        await _settle(first)

        # A restarted player sees the same manifest.
        fresh_downloader = FakeDownloader()
        second = _orchestrator(config, fresh_downloader)
        await second.initialize()
        created = second.sync(items)

        assert created == []
        assert fresh_downloader.started == []
        assert second.status == {i.url: ItemStatus.READY for i in items}

    @pytest.mark.asyncio
    async def test_republished_item_is_downloaded_again(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        orchestrator.sync([descriptor_factory("a", updated_at="v1")])
        await _settle(orchestrator)
        url = descriptor_factory("a").url
        old_path = orchestrator.playable_path(url)

        orchestrator.sync([descriptor_factory("a", updated_at="v2")])
        assert orchestrator.status[url] is ItemStatus.DOWNLOADING
        # The old version keeps playing while the new one downloads.
        assert orchestrator.playable_path(url) == old_path
        await _settle(orchestrator)

        new_path = orchestrator.playable_path(url)
        assert new_path != old_path
        assert not old_path.exists()
        assert orchestrator.store.needs_update(url, "v2") is False
        assert downloader.started.count(url) == 2

    @pytest.mark.asyncio
    async def test_republish_during_transfer_restarts_with_new_version(
        self, config, descriptor_factory, wait_until
    ):
        downloader = FakeDownloader(gated=True)
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        url = descriptor_factory("a").url
        orchestrator.sync([descriptor_factory("a", updated_at="v1")])
        await wait_until(lambda: downloader.started == [url])

        orchestrator.sync([descriptor_factory("a", updated_at="v2")])
        downloader.release(url)
        await _settle(orchestrator)

        assert downloader.started == [url, url]
        assert orchestrator.store.needs_update(url, "v2") is False
        assert orchestrator.store.get_entry(url).updated_at == "v2"
        assert orchestrator.status[url] is ItemStatus.READY
        assert orchestrator.progress[url] == 100.0

    @pytest.mark.asyncio
    async def test_republish_during_commit_does_not_mark_old_version_ready(
        self, config, downloader, descriptor_factory, wait_until, monkeypatch
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        url = descriptor_factory("a").url
        committing = asyncio.Event()
        commit_gate = asyncio.Event()
        real_put = orchestrator.store.put

        async def gated_put(entry):
            if entry.updated_at == "v1":
                committing.set()
                await commit_gate.wait()
            await real_put(entry)

        monkeypatch.setattr(orchestrator.store, "put", gated_put)
        orchestrator.sync([descriptor_factory("a", updated_at="v1")])
        await wait_until(committing.is_set)

        orchestrator.sync([descriptor_factory("a", updated_at="v2")])
        commit_gate.set()
        await _settle(orchestrator)

        assert downloader.started == [url, url]
        assert orchestrator.store.needs_update(url, "v2") is False
        assert orchestrator.status[url] is ItemStatus.READY
        path = orchestrator.playable_path(url)
        assert path.exists()
        assert [p.name for p in path.parent.iterdir()] == [path.name]

    @pytest.mark.asyncio
    async def test_removed_items_are_forgotten(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        a, b = descriptor_factory("a"), descriptor_factory("b")
        downloader.fail_next(b.url)
        orchestrator.sync([a, b])
        await _settle(orchestrator)
        assert orchestrator.retry_policy.attempts(b.url) == 1

        orchestrator.sync([a])

        assert orchestrator.status == {a.url: ItemStatus.READY}
        assert orchestrator.retry_policy.attempts(b.url) == 0
        assert orchestrator.summary().total == 1

    @pytest.mark.asyncio
    async def test_duplicate_urls_in_manifest_download_once(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        item = descriptor_factory("a")

        orchestrator.sync([item, item])
        await _settle(orchestrator)

        assert downloader.started == [item.url]


class TestRetries:
    @pytest.mark.asyncio
    async def test_failed_item_is_retried_by_tick(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        item = descriptor_factory("a")
        downloader.fail_next(item.url)

        orchestrator.sync([item])
        await _settle(orchestrator)

        assert orchestrator.status[item.url] is ItemStatus.ERROR
        assert "503" in orchestrator.errors[item.url]
        assert orchestrator.summary().failed == 1

        # An unchanged manifest leaves the retry to the tick.
        assert orchestrator.sync([item]) == []

        restarted = orchestrator.tick()
        assert [t.url for t in restarted] == [item.url]
        await _settle(orchestrator)

        assert orchestrator.status[item.url] is ItemStatus.READY
        assert orchestrator.errors == {}
        assert orchestrator.retry_policy.attempts(item.url) == 0

    @pytest.mark.asyncio
    async def test_attempt_number_counts_earlier_failures(
        self, config, downloader, descriptor_factory, event_logger
    ):
        orchestrator = _orchestrator(config, downloader, event_logger=event_logger)
        await orchestrator.initialize()
        item = descriptor_factory("a")
        downloader.fail_next(item.url)

        orchestrator.sync([item])
        await _settle(orchestrator)
        orchestrator.tick()
        await _settle(orchestrator)

        started = [
            kwargs["attempt"]
            for name, kwargs in event_logger.events
            if name == "download_started"
        ]
        assert started == [1, 2]

    @pytest.mark.asyncio
    async def test_cooldown_and_abandonment(
        self, config, descriptor_factory, clock, event_logger
    ):
        downloader = FakeDownloader()
        cfg = config.model_copy(
            update={"hard_cap": 3, "fast_retry_attempts": 1, "cooldown_seconds": 30}
        )
        orchestrator = _orchestrator(cfg, downloader, clock, event_logger=event_logger)
        await orchestrator.initialize()
        item = descriptor_factory("a")
        downloader.always_fail[item.url] = DownloadError("boom")

        orchestrator.sync([item])
        await _settle(orchestrator)
        assert orchestrator.retry_policy.attempts(item.url) == 1

        # Cooldown: nothing restarts until 30s after the last failure.
        assert orchestrator.tick() == []
        clock.advance(30)
        assert len(orchestrator.tick()) == 1
        await _settle(orchestrator)

        clock.advance(30)
        assert len(orchestrator.tick()) == 1
        await _settle(orchestrator)

        assert orchestrator.is_abandoned(item.url)
        assert orchestrator.status[item.url] is ItemStatus.ERROR
        summary = orchestrator.summary()
        assert summary.abandoned == 1
        assert summary.settled
        assert ("download_abandoned", {"url": item.url, "attempts": 3}) in (
            event_logger.events
        )

        clock.advance(3600)
        assert orchestrator.tick() == []
        assert downloader.started.count(item.url) == 3

        # A new version closes the circuit.
        del downloader.always_fail[item.url]
        orchestrator.sync([descriptor_factory("a", updated_at="2024-06-01T00:00:00Z")])
        await _settle(orchestrator)

        assert not orchestrator.is_abandoned(item.url)
        assert orchestrator.status[item.url] is ItemStatus.READY

    @pytest.mark.asyncio
    async def test_tick_starts_never_attempted_items_first(
        self, config, descriptor_factory, clock
    ):
        downloader = FakeDownloader(gated=True)
        cfg = config.model_copy(update={"max_concurrent": 1})
        orchestrator = _orchestrator(cfg, downloader, clock)
        await orchestrator.initialize()
        failed, blocker, fresh = (descriptor_factory(n) for n in ("f", "b", "n"))

        downloader.fail_next(failed.url)
        downloader.release(failed.url)
        orchestrator.sync([failed])
        await _settle(orchestrator)

        # `blocker` holds the only slot, `fresh` was cancelled before starting.
        orchestrator.sync([failed, blocker, fresh])
        orchestrator.scheduler.cancel_download(fresh.url)

        restarted = orchestrator.tick()
        assert [t.url for t in restarted] == [fresh.url, failed.url]

        downloader.release_all()
        await _settle(orchestrator)
        assert orchestrator.summary().ready == 3

    @pytest.mark.asyncio
    async def test_retry_loop_runs_in_background(
        self, config, downloader, descriptor_factory, wait_until
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        item = descriptor_factory("a")
        downloader.fail_next(item.url)

        orchestrator.sync([item])
        await orchestrator.start_retry_loop()
        try:
            await wait_until(
                lambda: orchestrator.status.get(item.url) is ItemStatus.READY
            )
        finally:
            await orchestrator.stop_retry_loop()

        assert downloader.started.count(item.url) == 2
        assert orchestrator._retry_task is None


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_initialize_enforces_size_limit(
        self, config, downloader, entry_factory
    ):
        cfg = config.model_copy(
            update={"max_cache_bytes": 1000, "warning_cache_bytes": 600}
        )
        seed = CacheStore(cfg.cache_dir)
        await seed.initialize()
        for i in range(3):
            await seed.put(
                entry_factory(seed, f"https://cdn.example.com/{i}.jpg", 10 + i, 400)
            )

        orchestrator = _orchestrator(cfg, downloader)
        await orchestrator.initialize()

        assert orchestrator.stats().total_files == 1
        assert orchestrator.store.get_entry("https://cdn.example.com/2.jpg")

    @pytest.mark.asyncio
    async def test_clear_cache_resets_everything(
        self, config, downloader, descriptor_factory
    ):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        items = [descriptor_factory(name) for name in ("a", "b")]
        orchestrator.sync(items)
        await _settle(orchestrator)
        paths = [orchestrator.playable_path(i.url) for i in items]

        await orchestrator.clear_cache()

        assert orchestrator.status == {}
        assert orchestrator.stats().total_files == 0
        assert not any(p.exists() for p in paths)

        # The next sync downloads everything again.
        assert len(orchestrator.sync(items)) == 2
        await _settle(orchestrator)
        assert orchestrator.summary().ready == 2

    @pytest.mark.asyncio
    async def test_clear_cache_cancels_running_transfers(
        self, config, descriptor_factory, wait_until
    ):
        downloader = FakeDownloader(gated=True)
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        item = descriptor_factory("a")
        orchestrator.sync([item])
        await wait_until(lambda: downloader.started == [item.url])
        assert orchestrator.summary().current == ["A"]

        await orchestrator.clear_cache()

        assert orchestrator.scheduler.active_count == 0
        assert orchestrator.store.entries() == []
        assert orchestrator.retry_policy.attempts(item.url) == 0

    @pytest.mark.asyncio
    async def test_close_stops_loop_and_downloader(self, config, downloader):
        orchestrator = _orchestrator(config, downloader)
        await orchestrator.initialize()
        await orchestrator.start_retry_loop()

        await orchestrator.close()

        assert downloader.closed
        assert orchestrator._retry_task is None
