"""
Periodic maintenance jobs.

Each job runs on its own ``PeriodicTask``. Overlap policy is skip-if-running:
when a tick comes due while the previous run is still active, the tick is
skipped and logged rather than queued.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from casehub.clients.market import MarketPriceClient
from casehub.config import settings
from casehub.logging_config import get_logger
from casehub.models import models
from casehub.payments import PaymentSettlementPipeline, sweep_expired_entries

logger = get_logger(__name__)

SIGNIFICANT_PRICE_CHANGE_PERCENT = 10


class PeriodicTask:
    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[None]]):
        self.name = name
        self.interval = interval_seconds
        self.func = func
        self.skipped = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def start(self):
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("Started periodic task name=%s interval_seconds=%s", self.name, self.interval)

    async def stop(self):
        for task in (self._loop_task, self._run_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._run_task = None
        logger.info("Stopped periodic task name=%s", self.name)

    def tick(self) -> Optional[asyncio.Task]:
        """
        Start one run unless the previous one is still going.
        """
        if self.is_running:
            self.skipped += 1
            logger.warning("Skipping periodic task name=%s previous run still active", self.name)
            return None
        self._run_task = asyncio.create_task(self._run_once())
        return self._run_task

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    async def _run_once(self):
        try:
            await self.func()
        except Exception:  # noqa: BLE001
            logger.exception("Periodic task failed name=%s", self.name)


async def refresh_item_prices(db: Session, market_client: MarketPriceClient) -> dict:
    """
    Re-price every persisted item from the live market. Items the market
    cannot price keep their previous price.
    """
    rows = db.query(models.Item.id, models.Item.market_hash_name, models.Item.price).all()
    db.rollback()
    if not rows:
        logger.info("No items to re-price")
        return {"updated": 0, "unchanged": 0, "failed": 0}

    prices = await market_client.fetch_prices([row.market_hash_name for row in rows])
    updated = unchanged = failed = 0
    try:
        for row in rows:
            result = prices.get(row.market_hash_name)
            if not result or not result.success or not result.price:
                failed += 1
                continue
            if result.price == row.price:
                unchanged += 1
                continue
            if row.price and abs(result.price - row.price) / row.price * 100 > SIGNIFICANT_PRICE_CHANGE_PERCENT:
                logger.info(
                    "Significant price change item=%s old=%s new=%s",
                    row.market_hash_name,
                    row.price,
                    result.price,
                )
            db.query(models.Item).filter(models.Item.id == row.id).update({"price": result.price})
            updated += 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Item price refresh done updated=%s unchanged=%s failed=%s", updated, unchanged, failed)
    return {"updated": updated, "unchanged": unchanged, "failed": failed}


def _with_session(session_factory: sessionmaker, work: Callable[[Session], Awaitable[None]]):
    async def run():
        db = session_factory()
        try:
            await work(db)
        finally:
            db.close()
    return run


def build_periodic_tasks(
    session_factory: sessionmaker,
    pipeline: PaymentSettlementPipeline,
    market_client: MarketPriceClient,
) -> list[PeriodicTask]:
    async def sweep(db: Session):
        sweep_expired_entries(db)

    async def poll(db: Session):
        await pipeline.poll_pending_entries(db)

    async def reprice(db: Session):
        await refresh_item_prices(db, market_client)

    return [
        PeriodicTask("expiry-sweep", settings.expiry_sweep_interval_seconds, _with_session(session_factory, sweep)),
        PeriodicTask("pending-poll", settings.pending_poll_interval_seconds, _with_session(session_factory, poll)),
        PeriodicTask("price-refresh", settings.price_refresh_interval_seconds, _with_session(session_factory, reprice)),
    ]
