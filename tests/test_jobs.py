import asyncio

from casehub.clients.market import PriceResult
from casehub.jobs import PeriodicTask, refresh_item_prices
from casehub.models import models


def test_tick_skips_while_previous_run_active():
    async def scenario():
        release = asyncio.Event()
        calls = []

        async def work():
            calls.append(1)
            await release.wait()

        task = PeriodicTask("slow", 3600, work)
        first = task.tick()
        await asyncio.sleep(0)
        assert task.is_running
        assert task.tick() is None
        assert task.skipped == 1

        release.set()
        await first
        second = task.tick()
        await second
        return calls, task

    calls, task = asyncio.run(scenario())
    assert len(calls) == 2
    assert task.skipped == 1
    assert not task.is_running


def test_failing_run_is_contained():
    async def scenario():
        async def broken():
            raise RuntimeError("gateway down")

        task = PeriodicTask("broken", 3600, broken)
        await task.tick()
        # The next tick still runs.
        return task.tick()

    assert asyncio.run(scenario()) is not None


def test_start_and_stop():
    async def scenario():
        runs = []

        async def work():
            runs.append(1)

        task = PeriodicTask("fast", 0.01, work)
        await task.start()
        await asyncio.sleep(0.1)
        await task.stop()
        count = len(runs)
        await asyncio.sleep(0.05)
        return count, len(runs)

    count, after_stop = asyncio.run(scenario())
    assert count >= 1
    assert after_stop == count


class FakeMarket:
    def __init__(self, prices):
        self.prices = prices

    async def fetch_prices(self, names):
        return {name: self.prices.get(name, PriceResult(success=False, error="not listed")) for name in names}


def test_refresh_item_prices(db, seed):
    rising = seed.item("AK-47 | Redline", 1000)
    steady = seed.item("P250 | Sand Dune", 50)
    unlisted = seed.item("Souvenir Oddity", 700)
    market = FakeMarket({
        "AK-47 | Redline": PriceResult(success=True, price=1500),
        "P250 | Sand Dune": PriceResult(success=True, price=50),
    })

    summary = asyncio.run(refresh_item_prices(db, market))

    assert summary == {"updated": 1, "unchanged": 1, "failed": 1}
    db.expire_all()
    assert db.get(models.Item, rising).price == 1500
    assert db.get(models.Item, steady).price == 50
    assert db.get(models.Item, unlisted).price == 700


def test_refresh_with_no_items(db):
    assert asyncio.run(refresh_item_prices(db, FakeMarket({}))) == {"updated": 0, "unchanged": 0, "failed": 0}
