import asyncio

import pytest

from smart_e2b.config import IDLE_EVICTION_SECONDS, SANDBOX_TTL_SECONDS
from smart_e2b.pool import SandboxPool, build_pools


def _pool(factory, clock, **kwargs) -> SandboxPool:
    return SandboxPool("javascript", factory, clock=clock, **kwargs)


def test_first_acquire_creates_sandbox(factory, clock):
    pool = _pool(factory, clock)

    handle = asyncio.run(pool.acquire("notebook"))

    assert handle is factory.created[0]
    assert pool.entries["notebook"].last_used_at == clock.now
    assert handle.timeouts == []


def test_second_acquire_reuses_and_renews(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        first = await pool.acquire("notebook")
        clock.advance(42)
        second = await pool.acquire("notebook")
        return first, second

    first, second = asyncio.run(scenario())

    assert first is second
    assert len(factory.created) == 1
    assert pool.entries["notebook"].last_used_at == 1042
    assert second.timeouts == [SANDBOX_TTL_SECONDS]


def test_missing_key_uses_family_default(factory, clock):
    pool = _pool(factory, clock)

    asyncio.run(pool.acquire())

    assert "default-js" in pool


def test_renewal_failure_does_not_fail_acquire(factory, clock, capsys):
    pool = _pool(factory, clock)

    async def scenario():
        handle = await pool.acquire("k")
        handle.renew_error = RuntimeError("sandbox timeout update refused")
        return handle, await pool.acquire("k")

    first, second = asyncio.run(scenario())

    assert first is second
    assert "Could not renew" in capsys.readouterr().err


def test_creation_failure_propagates_without_entry(factory, clock):
    factory.error = RuntimeError("401: invalid API key")
    pool = _pool(factory, clock)

    with pytest.raises(RuntimeError, match="invalid API key"):
        asyncio.run(pool.acquire("k"))

    assert "k" not in pool


def test_concurrent_acquires_share_one_creation(factory, clock):
    slow = factory
    slow.delay = 0.05
    pool = _pool(slow, clock)

    async def scenario():
        return await asyncio.gather(pool.acquire("k"), pool.acquire("k"), pool.acquire("k"))

    handles = asyncio.run(scenario())

    assert len(slow.created) == 1
    assert all(handle is slow.created[0] for handle in handles)


def test_distinct_keys_get_distinct_sandboxes(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        return await pool.acquire("a"), await pool.acquire("b")

    a, b = asyncio.run(scenario())

    assert a is not b
    assert len(pool) == 2


def test_sweep_evicts_only_entries_idle_beyond_threshold(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        stale = await pool.acquire("stale")
        clock.advance(10)
        edge = await pool.acquire("edge")
        clock.advance(5)
        fresh = await pool.acquire("fresh")
        clock.advance(IDLE_EVICTION_SECONDS - 5)
        evicted = await pool.sweep()
        return stale, edge, fresh, evicted

    stale, edge, fresh, evicted = asyncio.run(scenario())

    # stale: idle 1800 + 10, edge: exactly 1800, fresh: 1795
    assert evicted == ["stale"]
    assert stale.killed is True
    assert edge.killed is False and fresh.killed is False
    assert set(pool.entries) == {"edge", "fresh"}


def test_sweep_swallows_teardown_failure(factory, clock, capsys):
    pool = _pool(factory, clock)

    async def scenario():
        handle = await pool.acquire("k")
        handle.kill_error = ConnectionError("sandbox already gone")
        clock.advance(IDLE_EVICTION_SECONDS + 1)
        return await pool.sweep()

    assert asyncio.run(scenario()) == ["k"]
    assert "k" not in pool
    assert "Error while closing" in capsys.readouterr().err


def test_acquire_after_eviction_creates_new_sandbox(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        first = await pool.acquire("k")
        clock.advance(IDLE_EVICTION_SECONDS + 1)
        await pool.sweep()
        return first, await pool.acquire("k")

    first, second = asyncio.run(scenario())

    assert first is not second
    assert len(factory.created) == 2


def test_sweep_forgets_creation_locks_of_gone_keys(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        for n in range(5):
            await pool.acquire(f"one-shot-{n}")
        factory.error = RuntimeError("quota exceeded")
        with pytest.raises(RuntimeError):
            await pool.acquire("never-created")
        factory.error = None
        await pool.acquire("kept")
        clock.advance(IDLE_EVICTION_SECONDS + 1)
        await pool.acquire("kept")
        return await pool.sweep()

    evicted = asyncio.run(scenario())

    assert sorted(evicted) == [f"one-shot-{n}" for n in range(5)]
    assert set(pool._create_locks) == {"kept"}


def test_periodic_sweep_runs_until_closed(factory, clock):
    pool = _pool(factory, clock, sweep_interval=0.01)

    async def scenario():
        handle = await pool.acquire("k")
        pool.start()
        clock.advance(IDLE_EVICTION_SECONDS + 1)
        for _ in range(100):
            if "k" not in pool:
                break
            await asyncio.sleep(0.01)
        await pool.close()
        return handle

    handle = asyncio.run(scenario())

    assert handle.killed is True
    assert pool._sweep_task is None


def test_close_kills_every_pooled_sandbox(factory, clock):
    pool = _pool(factory, clock)

    async def scenario():
        await pool.acquire("a")
        await pool.acquire("b")
        await pool.close()

    asyncio.run(scenario())

    assert len(pool) == 0
    assert all(sandbox.killed for sandbox in factory.created)


def test_build_pools_gives_each_family_its_own_cache(factory):
    pools = build_pools(factory)

    assert set(pools) == {"javascript", "python", "filesystem"}
    assert pools["python"].default_key == "default-py"
    assert pools["filesystem"].default_key == "default-fs"
    assert pools["javascript"].entries is not pools["python"].entries
