"""Tests covering the instance pool: default singleton, checkout and teardown."""

from __future__ import annotations

import asyncio
import time

import pytest

from fakes import FakeApplet, FakeLauncher, fast_timeouts, no_bundle
from ggbhost.config import InstanceConfig, PoolConfig
from ggbhost.errors import ConnectionError, PoolExhaustedError
from ggbhost.runtime.instance import EngineInstance, InstanceState
from ggbhost.runtime.pool import InstancePool


def make_pool(launcher: FakeLauncher, startup: float = 2.0, **pool_options) -> InstancePool:
    def factory() -> EngineInstance:
        return EngineInstance(
            InstanceConfig(),
            timeouts=fast_timeouts(startup=startup),
            launcher=launcher,
            bundle_loader=no_bundle,
        )

    return InstancePool(PoolConfig(**pool_options), instance_factory=factory)


def test_concurrent_default_callers_share_one_launch() -> None:
    launcher = FakeLauncher(delay=0.05)

    async def scenario() -> tuple:
        pool = make_pool(launcher)
        first, second = await asyncio.gather(pool.get_default_instance(), pool.get_default_instance())
        stats = pool.stats()
        await pool.cleanup()
        return first, second, stats

    first, second, stats = asyncio.run(scenario())

    assert first is second
    assert launcher.launches == 1
    assert stats["total"] == 1
    assert stats["defaultReady"] is True


def test_acquire_hands_out_distinct_instances_and_bounds_count() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher, max_instances=3, acquire_timeout=0.1)
        default = await pool.get_default_instance()
        first, second = await asyncio.gather(pool.acquire(), pool.acquire())
        assert len({id(default), id(first), id(second)}) == 3
        with pytest.raises(PoolExhaustedError):
            await pool.acquire()
        assert pool.stats()["active"] == 2
        await pool.cleanup()

    asyncio.run(scenario())
    assert launcher.launches == 3


def test_acquire_waits_for_release_and_reuses_instance() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher, max_instances=1, acquire_timeout=1.0)
        held = await pool.acquire()
        await held.eval_command("a = 1")
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.05)
        assert not waiter.done()
        await pool.release(held)
        reused = await waiter
        assert reused is held
        assert launcher.applet.values == {}
        await pool.release(reused)
        await pool.cleanup()

    asyncio.run(scenario())
    assert launcher.launches == 1


def test_lease_releases_on_exit() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher)
        async with pool.lease() as instance:
            assert instance.is_ready
            assert pool.stats()["active"] == 1
        assert pool.stats()["active"] == 0
        await pool.cleanup()

    asyncio.run(scenario())


def test_failed_launch_returns_capacity() -> None:
    launcher = FakeLauncher(applet_factory=lambda: FakeApplet(probe_ok=False))

    async def scenario() -> None:
        pool = make_pool(launcher, startup=0.1, max_instances=1)
        with pytest.raises(ConnectionError):
            await pool.get_default_instance()
        assert pool.stats()["launching"] == 0
        assert pool.stats()["total"] == 0
        launcher.applet_factory = FakeApplet
        instance = await pool.get_default_instance()
        assert instance.is_ready
        await pool.cleanup()

    asyncio.run(scenario())
    assert launcher.launches == 2


def test_cleanup_closes_everything_and_is_idempotent() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher)
        default = await pool.get_default_instance()
        dedicated = await pool.acquire()
        await pool.cleanup()
        await pool.cleanup()
        assert default.state is InstanceState.CLOSED
        assert dedicated.state is InstanceState.CLOSED
        with pytest.raises(ConnectionError):
            await pool.get_default_instance()
        with pytest.raises(ConnectionError):
            await pool.acquire()

    asyncio.run(scenario())
    assert all(handle.browser_closed for handle in launcher.handles)


def test_reap_idle_skips_checked_out_and_default_instances() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher, max_idle_time=10, instance_timeout=300, max_instances=3)
        default = await pool.get_default_instance()
        assert (await default.eval_command("a = 3")).success
        busy = await pool.acquire()
        spare = await pool.acquire()
        await pool.release(spare)

        reaped = await pool.reap_idle(now=time.monotonic() + 301)

        assert reaped == 1
        assert spare.state is InstanceState.CLOSED
        assert busy.is_ready
        assert default.is_ready
        again = await pool.get_default_instance()
        assert again is default
        assert await again.get_value("a") == 3.0
        await pool.cleanup()

    asyncio.run(scenario())
    assert launcher.launches == 3


def test_reap_idle_drops_a_closed_default_instance() -> None:
    launcher = FakeLauncher()

    async def scenario() -> None:
        pool = make_pool(launcher)
        default = await pool.get_default_instance()
        await default.cleanup()
        assert await pool.reap_idle() == 1
        replacement = await pool.get_default_instance()
        assert replacement is not default
        assert replacement.is_ready
        await pool.cleanup()

    asyncio.run(scenario())
    assert launcher.launches == 2


def test_warm_up_launches_requested_count() -> None:
    launcher = FakeLauncher()

    async def scenario() -> dict:
        pool = make_pool(launcher, max_instances=3)
        stats = await pool.warm_up(2)
        await pool.cleanup()
        return stats

    stats = asyncio.run(scenario())

    assert launcher.launches == 2
    assert stats["total"] == 2
    assert stats["idle"] == 2
