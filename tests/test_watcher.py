"""Tests for the source change watcher."""

import asyncio

import pytest

from wskdebug_core.watcher import ChangeWatcher


def fake_watch(*batches, error=None):
    """Watch factory yielding *batches*, then raising *error* or idling."""
    calls = []

    async def _watch(*paths, stop_event, debounce_ms):
        calls.append((paths, debounce_ms))
        for batch in batches:
            yield batch
        if error is not None:
            raise error
        await stop_event.wait()

    _watch.calls = calls
    return _watch


@pytest.mark.asyncio
async def test_one_trigger_per_batch():
    seen = []

    async def on_change(changes):
        seen.append(changes)

    watch = fake_watch({(2, "/src/a.js"), (2, "/src/b.js")}, {(2, "/src/a.js")})
    watcher = ChangeWatcher(["/src"], on_change, debounce_ms=100, watch=watch)
    task = asyncio.ensure_future(watcher.run())
    await asyncio.sleep(0.05)
    watcher.stop()
    await asyncio.wait_for(task, 1)

    assert len(seen) == 2
    assert watcher.triggers == 2
    assert watch.calls == [(("/src",), 100)]
    assert watcher.enabled


@pytest.mark.asyncio
async def test_handler_error_keeps_watching():
    seen = []

    async def on_change(changes):
        seen.append(changes)
        if len(seen) == 1:
            raise RuntimeError("invoke failed")

    watch = fake_watch({(2, "a")}, {(2, "b")})
    watcher = ChangeWatcher(["/src"], on_change, watch=watch)
    task = asyncio.ensure_future(watcher.run())
    await asyncio.sleep(0.05)
    watcher.stop()
    await asyncio.wait_for(task, 1)

    assert len(seen) == 2
    assert watcher.enabled


@pytest.mark.asyncio
async def test_watch_failure_disables_watcher():
    async def on_change(changes):
        pass

    watcher = ChangeWatcher(["/gone"], on_change, watch=fake_watch(error=FileNotFoundError("/gone")))
    await asyncio.wait_for(watcher.run(), 1)
    assert not watcher.enabled


@pytest.mark.asyncio
async def test_changes_after_stop_are_ignored():
    seen = []

    async def on_change(changes):
        seen.append(changes)

    watcher = ChangeWatcher(["/src"], on_change, watch=fake_watch({(2, "a")}))
    watcher.stop()
    await asyncio.wait_for(watcher.run(), 1)
    assert seen == []
