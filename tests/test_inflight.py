import asyncio

import pytest

from castvault.inflight import InFlightRegistry


@pytest.mark.asyncio
async def test_concurrent_runs_for_same_key_share_one_attempt() -> None:
    registry: InFlightRegistry[int] = InFlightRegistry()
    calls = 0

    async def attempt() -> int:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return 42

    results = await asyncio.gather(*(registry.run("key", attempt) for _ in range(5)))

    assert results == [42] * 5
    assert calls == 1
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_entry_is_removed_after_failure_and_next_run_retries() -> None:
    registry: InFlightRegistry[str] = InFlightRegistry()
    outcomes = iter([RuntimeError("boom"), "ok"])

    async def attempt() -> str:
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    with pytest.raises(RuntimeError):
        await registry.run("key", attempt)
    assert "key" not in registry

    assert await registry.run("key", attempt) == "ok"


@pytest.mark.asyncio
async def test_distinct_keys_do_not_coalesce() -> None:
    registry: InFlightRegistry[str] = InFlightRegistry()
    seen: list[str] = []

    def factory(key: str):
        async def attempt() -> str:
            seen.append(key)
            await asyncio.sleep(0)
            return key

        return attempt

    results = await asyncio.gather(registry.run("a", factory("a")), registry.run("b", factory("b")))

    assert results == ["a", "b"]
    assert sorted(seen) == ["a", "b"]


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_attempt() -> None:
    registry: InFlightRegistry[str] = InFlightRegistry()
    release = asyncio.Event()

    async def attempt() -> str:
        await release.wait()
        return "done"

    first = asyncio.ensure_future(registry.run("key", attempt))
    second = asyncio.ensure_future(registry.run("key", attempt))
    await asyncio.sleep(0)

    first.cancel()
    release.set()

    assert await second == "done"
    with pytest.raises(asyncio.CancelledError):
        await first
