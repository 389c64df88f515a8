"""In-process lock primitive tests."""

import asyncio

import pytest

from partner_portal.utils.locks import KeyedLock, SingleFlight


@pytest.mark.asyncio
class TestKeyedLock:

    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async with locks.hold(("t1", "brand")):
            assert locks.is_held(("t1", "brand"))

            async def other():
                async with locks.hold(("t1", "venue")):
                    inside.set()

            await asyncio.wait_for(other(), timeout=1)
        assert inside.is_set()

    async def test_idle_slots_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold("k"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_held("k")


@pytest.mark.unit
def test_single_flight():
    flights = SingleFlight()
    assert flights.acquire("t1") is True
    assert flights.acquire("t1") is False
    assert flights.is_in_flight("t1")
    flights.release("t1")
    assert not flights.is_in_flight("t1")
    # Releasing twice is harmless
    flights.release("t1")
