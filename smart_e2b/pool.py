import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from smart_e2b.config import (
    DEFAULT_SANDBOX_IDS, IDLE_EVICTION_SECONDS, SANDBOX_TTL_SECONDS, SWEEP_INTERVAL_SECONDS
)
from smart_e2b.resilience import best_effort
from smart_e2b.utils import log_error

SandboxFactory = Callable[[], Awaitable[Any]]


@dataclass
class PooledSandbox:
    key: str
    handle: Any
    last_used_at: float

    def idle_for(self, now: float) -> float:
        return now - self.last_used_at


class SandboxPool:
    """Keyed cache of remote sandboxes for one tool family.

    Handlers only ever acquire; eviction is the periodic sweep's job. A
    sandbox is created on the first acquisition of its key, its remote
    timeout is pushed back on every later one, and it is killed once it
    has been idle for longer than ``idle_timeout`` seconds.
    """

    def __init__(
        self,
        family: str,
        factory: SandboxFactory,
        idle_timeout: float = IDLE_EVICTION_SECONDS,
        sandbox_ttl: int = SANDBOX_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.family = family
        self.factory = factory
        self.idle_timeout = idle_timeout
        self.sandbox_ttl = sandbox_ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.entries: Dict[str, PooledSandbox] = {}
        self._create_locks: Dict[str, asyncio.Lock] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def default_key(self) -> str:
        return DEFAULT_SANDBOX_IDS.get(self.family, f"default-{self.family}")

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    async def acquire(self, key: Optional[str] = None) -> Any:
        key = key or self.default_key
        entry = self.entries.get(key)
        if entry is not None:
            return await self._reuse(entry)

        lock = self._create_locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another acquirer may have created it while we waited.
            entry = self.entries.get(key)
            if entry is not None:
                return await self._reuse(entry)
            log_error(f"Creating new {self.family} sandbox with ID: {key}")
            handle = await self.factory()
            self.entries[key] = PooledSandbox(key=key, handle=handle, last_used_at=self.clock())
            return handle

    async def _reuse(self, entry: PooledSandbox) -> Any:
        entry.last_used_at = self.clock()
        renewal = await best_effort(entry.handle.set_timeout(self.sandbox_ttl))
        if not renewal.ok:
            log_error(f"Could not renew {self.family} sandbox {entry.key}: {renewal.error}")
        return entry.handle

    def _prune_create_locks(self) -> None:
        for key, lock in list(self._create_locks.items()):
            if key not in self.entries and not lock.locked():
                del self._create_locks[key]

    async def sweep(self) -> List[str]:
        self._prune_create_locks()
        now = self.clock()
        stale = [key for key, entry in self.entries.items() if entry.idle_for(now) > self.idle_timeout]
        evicted = []
        for key in stale:
            entry = self.entries.get(key)
            # An acquisition may have touched it during an earlier teardown.
            if entry is None or entry.idle_for(self.clock()) <= self.idle_timeout:
                continue
            del self.entries[key]
            lock = self._create_locks.get(key)
            if lock is not None and not lock.locked():
                del self._create_locks[key]
            evicted.append(key)
            log_error(f"Closing unused {self.family} sandbox {key}")
            await self._teardown(entry)
        return evicted

    async def _teardown(self, entry: PooledSandbox) -> None:
        teardown = await best_effort(entry.handle.kill())
        if not teardown.ok:
            log_error(f"Error while closing {self.family} sandbox {entry.key}: {teardown.error}")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                log_error(f"{self.family} sweep error: {exc}")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        entries = list(self.entries.values())
        self.entries.clear()
        self._create_locks.clear()
        for entry in entries:
            await self._teardown(entry)


TOOL_FAMILIES = ("javascript", "python", "filesystem")


def build_pools(factory: SandboxFactory, **kwargs) -> Dict[str, SandboxPool]:
    return {family: SandboxPool(family, factory, **kwargs) for family in TOOL_FAMILIES}
