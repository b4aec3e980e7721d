"""
Instance pool.

Engine instances are expensive to start, so the pool keeps them alive across
requests.  Two checkout styles coexist:

* :meth:`InstancePool.get_default_instance` returns one shared, lazily created
  instance.  Every caller of the default path shares it, so their work is
  serialised by that instance's lock; concurrent first callers are coalesced
  into a single launch.
* :meth:`InstancePool.acquire` / :meth:`InstancePool.release` hand out
  dedicated instances for callers that need independent sessions.

Both count against ``max_instances``.  Only the pool mutates entry
bookkeeping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

from ..config import HostConfig, InstanceConfig, PoolConfig, TimeoutConfig
from ..errors import ConnectionError, EngineError, PoolExhaustedError
from .instance import EngineInstance, InstanceState

LOG = logging.getLogger(__name__)

InstanceFactory = Callable[[], EngineInstance]


@dataclass
class PoolEntry:
    instance: EngineInstance
    in_use: bool = False
    shared: bool = False
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    acquired_at: Optional[float] = None
    usage_count: int = 0

    def idle_seconds(self, now: float) -> float:
        reference = max(self.last_used, self.instance.last_activity)
        return max(0.0, now - reference)

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.created_at)


class InstancePool:
    """Creates, hands out and tears down engine instances."""

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        *,
        instance_config: Optional[InstanceConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
        instance_factory: Optional[InstanceFactory] = None,
        bundle_cache_dir: Optional[Path] = None,
    ) -> None:
        self.config = config or PoolConfig()
        self._instance_config = instance_config or InstanceConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._factory = instance_factory
        self._bundle_cache_dir = bundle_cache_dir
        self._entries: List[PoolEntry] = []
        self._default: Optional[PoolEntry] = None
        self._default_lock = asyncio.Lock()
        self._condition = asyncio.Condition()
        self._launching = 0
        self._launch_count = 0
        self._closed = False
        self._reaper: Optional["asyncio.Task[None]"] = None

    @classmethod
    def from_config(cls, config: HostConfig, **kwargs) -> "InstancePool":
        return cls(
            config.pool,
            instance_config=config.instance,
            timeouts=config.timeouts,
            bundle_cache_dir=config.staging_root / "ggbhost-bundle",
            **kwargs,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def launch_count(self) -> int:
        """Number of instances this pool has started so far."""
        return self._launch_count

    # ---- helpers

    def _create_instance(self) -> EngineInstance:
        if self._factory is not None:
            return self._factory()
        return EngineInstance(
            self._instance_config,
            timeouts=self._timeouts,
            bundle_cache_dir=self._bundle_cache_dir,
        )

    def _capacity_left(self) -> int:
        return self.config.max_instances - len(self._entries) - self._launching

    def _find(self, instance: EngineInstance) -> Optional[PoolEntry]:
        for entry in self._entries:
            if entry.instance is instance:
                return entry
        return None

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionError("Instance pool has been shut down")

    async def _reserve_slot(self) -> None:
        """Wait for room for one more instance and claim it (caller holds the condition)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.acquire_timeout
        while True:
            self._ensure_open()
            if self._capacity_left() > 0:
                self._launching += 1
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(self._condition.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                break
        raise PoolExhaustedError(
            f"No engine instance became available within {self.config.acquire_timeout:g}s "
            f"(max_instances={self.config.max_instances})"
        )

    async def _launch(self, *, shared: bool) -> PoolEntry:
        """Start an instance in a slot already reserved by :meth:`_reserve_slot`."""
        instance = self._create_instance()
        self._launch_count += 1
        try:
            await instance.initialize()
        except BaseException:
            async with self._condition:
                self._launching -= 1
                self._condition.notify_all()
            raise

        now = time.monotonic()
        entry = PoolEntry(instance=instance, shared=shared, created_at=now, last_used=now)
        async with self._condition:
            self._launching -= 1
            if self._closed:
                self._condition.notify_all()
                closed = True
            else:
                self._entries.append(entry)
                closed = False
        if closed:
            await instance.cleanup()
            raise ConnectionError("Instance pool was shut down while an instance was starting")
        LOG.info(
            "Engine instance %s started (%s, %d/%d)",
            instance.id[:8],
            "default" if shared else "dedicated",
            len(self._entries),
            self.config.max_instances,
        )
        return entry

    async def _discard(self, entry: PoolEntry) -> None:
        async with self._condition:
            if entry in self._entries:
                self._entries.remove(entry)
            if self._default is entry:
                self._default = None
            self._condition.notify_all()
        await entry.instance.cleanup()

    # ---- default instance

    async def get_default_instance(self) -> EngineInstance:
        """
        Return the shared instance, launching it on first use.

        Concurrent first callers wait on the same launch; only one process is
        ever started for the default slot.
        """

        self._ensure_open()
        entry = self._default
        if entry is not None and entry.instance.is_ready:
            entry.usage_count += 1
            entry.last_used = time.monotonic()
            return entry.instance

        async with self._default_lock:
            entry = self._default
            if entry is not None and entry.instance.is_ready:
                entry.usage_count += 1
                entry.last_used = time.monotonic()
                return entry.instance
            if entry is not None:
                LOG.warning("Default engine instance is %s; replacing it", entry.instance.state.value)
                await self._discard(entry)

            async with self._condition:
                await self._reserve_slot()
            entry = await self._launch(shared=True)
            entry.usage_count += 1
            entry.last_used = time.monotonic()
            self._default = entry
            return entry.instance

    async def warm_up(self, count: int = 1) -> dict:
        """
        Pre-launch ``count`` instances (the default one included) so the first
        real request does not pay the startup cost.
        """

        count = max(1, min(int(count), self.config.max_instances))
        LOG.info("Warming up %d engine instance(s)", count)
        await self.get_default_instance()

        extra: List[EngineInstance] = []
        try:
            for _ in range(count - 1):
                idle = sum(1 for e in self._entries if not e.shared and not e.in_use)
                if idle + len(extra) >= count - 1 or self._capacity_left() <= 0:
                    break
                extra.append(await self.acquire())
        finally:
            for instance in extra:
                await self.release(instance)
        return self.stats()

    # ---- dedicated instances

    async def acquire(self) -> EngineInstance:
        """
        Check out a dedicated instance.

        Reuses an idle one when available, launches a new one while under
        ``max_instances`` and otherwise waits up to ``acquire_timeout`` for a
        release before raising :class:`PoolExhaustedError`.
        """

        async with self._condition:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.acquire_timeout
            while True:
                self._ensure_open()
                for entry in self._entries:
                    if not entry.shared and not entry.in_use and entry.instance.is_ready:
                        entry.in_use = True
                        entry.acquired_at = time.monotonic()
                        entry.usage_count += 1
                        LOG.debug("Reusing engine instance %s", entry.instance.id[:8])
                        return entry.instance
                if self._capacity_left() > 0:
                    self._launching += 1
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"All {self.config.max_instances} engine instances are busy"
                    )
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise PoolExhaustedError(
                        f"No engine instance was released within {self.config.acquire_timeout:g}s"
                    ) from None

        entry = await self._launch(shared=False)
        entry.in_use = True
        entry.acquired_at = time.monotonic()
        entry.usage_count += 1
        return entry.instance

    async def release(self, instance: EngineInstance) -> None:
        """Return a dedicated instance, resetting its construction first."""

        entry = self._find(instance)
        if entry is None:
            LOG.warning("Release of unknown engine instance %s ignored", instance.id[:8])
            return
        if entry.shared:
            LOG.debug("Default engine instance is never checked out; release ignored")
            return

        if instance.is_ready:
            try:
                await instance.new_construction()
            except EngineError as exc:
                LOG.warning("Failed to reset engine instance %s on release: %s", instance.id[:8], exc)

        async with self._condition:
            entry.in_use = False
            entry.acquired_at = None
            entry.last_used = time.monotonic()
            if instance.is_closed and entry in self._entries:
                self._entries.remove(entry)
            self._condition.notify_all()

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[EngineInstance]:
        instance = await self.acquire()
        try:
            yield instance
        finally:
            await self.release(instance)

    # ---- reclamation

    def start(self) -> None:
        """Start the background idle reaper."""
        if self._reaper is not None and not self._reaper.done():
            return
        self._reaper = asyncio.get_running_loop().create_task(self._reap_loop())

    async def _reap_loop(self) -> None:
        interval = max(1.0, float(self.config.reap_interval))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Idle instance reaping failed")

    async def reap_idle(self, now: Optional[float] = None) -> int:
        """
        Remove dedicated instances idle or alive for too long.  The shared
        default instance is kept for the life of the pool unless it has
        already closed.  Returns how many were removed.
        """

        current = time.monotonic() if now is None else now
        victims: List[PoolEntry] = []
        async with self._condition:
            for entry in list(self._entries):
                instance = entry.instance
                if entry.shared and not instance.is_closed:
                    continue
                if entry.in_use or instance.is_locked or instance.state is InstanceState.BUSY:
                    continue
                expired = (
                    instance.is_closed
                    or entry.idle_seconds(current) > self.config.max_idle_time
                    or entry.age_seconds(current) > self.config.instance_timeout
                )
                if expired:
                    victims.append(entry)
                    self._entries.remove(entry)
                    if self._default is entry:
                        self._default = None
            if victims:
                self._condition.notify_all()

        for entry in victims:
            LOG.info("Reaping idle engine instance %s", entry.instance.id[:8])
            await entry.instance.cleanup()
        return len(victims)

    # ---- shutdown

    async def cleanup(self) -> None:
        """
        Tear down every instance.  Safe to call with operations in flight and
        safe to call more than once.
        """

        reaper, self._reaper = self._reaper, None
        if reaper is not None:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass

        async with self._condition:
            already_closed = self._closed and not self._entries
            self._closed = True
            entries = list(self._entries)
            self._entries.clear()
            self._default = None
            self._condition.notify_all()
        if already_closed:
            return

        LOG.info("Shutting down instance pool (%d instance(s))", len(entries))
        results = await asyncio.gather(
            *(entry.instance.cleanup() for entry in entries), return_exceptions=True
        )
        for entry, outcome in zip(entries, results):
            if isinstance(outcome, BaseException):  # pragma: no cover - defensive
                LOG.error("Failed to clean up engine instance %s: %s", entry.instance.id[:8], outcome)

    # ---- reporting

    def stats(self) -> dict:
        now = time.monotonic()
        total = len(self._entries)
        active = sum(1 for entry in self._entries if entry.in_use)
        usage = [entry.usage_count for entry in self._entries]
        oldest = max((entry.age_seconds(now) for entry in self._entries), default=0.0)
        return {
            "total": total,
            "active": active,
            "idle": total - active,
            "launching": self._launching,
            "maxInstances": self.config.max_instances,
            "defaultReady": bool(self._default and self._default.instance.is_ready),
            "averageUsage": (sum(usage) / total) if total else 0.0,
            "oldestAgeSeconds": round(oldest, 3),
            "closed": self._closed,
        }


__all__ = ["InstancePool", "PoolEntry"]
