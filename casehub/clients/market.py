import asyncio
from dataclasses import dataclass
from typing import Optional

from casehub.config import settings
from casehub.errors import ExternalServiceError
from casehub.helpers import GatewayHttpClient
from casehub.logging_config import get_logger

logger = get_logger(__name__)

CHUNK_DELAY_SECONDS = 0.1


@dataclass
class PriceResult:
    success: bool
    price: Optional[int] = None
    error: Optional[str] = None


class MarketPriceClient(GatewayHttpClient):
    """
    Live price source. Prices are quoted in minor units; the cheapest offer
    for a name is taken as its price.
    """

    name = "market"

    def __init__(self, batch_size: int | None = None, **kwargs):
        super().__init__(settings.market_base_url, **kwargs)
        self.batch_size = batch_size or settings.market_batch_size

    async def fetch_prices(self, names: list[str]) -> dict[str, PriceResult]:
        results: dict[str, PriceResult] = {}
        if not names:
            return results
        chunks = [names[i:i + self.batch_size] for i in range(0, len(names), self.batch_size)]
        logger.info("Fetching market prices total=%s chunks=%s", len(names), len(chunks))
        for index, chunk in enumerate(chunks):
            results.update(await self._fetch_chunk(chunk))
            if index < len(chunks) - 1:
                await asyncio.sleep(CHUNK_DELAY_SECONDS)
        succeeded = sum(1 for r in results.values() if r.success)
        logger.info("Market price fetch done successful=%s failed=%s", succeeded, len(results) - succeeded)
        return results

    async def _fetch_chunk(self, chunk: list[str]) -> dict[str, PriceResult]:
        params = [("key", settings.market_api_key)] + [("list_hash_name[]", name) for name in chunk]
        try:
            resp = await self._request_with_retry("GET", "search-list-items-by-hash-name-all", params=params)
            body = self._json_or_raise(resp, "price lookup")
        except ExternalServiceError as exc:
            logger.warning("Market price chunk failed size=%s error=%s", len(chunk), exc.message)
            return {name: PriceResult(success=False, error=exc.message) for name in chunk}

        if not body.get("success") or not isinstance(body.get("data"), dict):
            return {name: PriceResult(success=False, error="market returned no data") for name in chunk}

        results = {}
        for name in chunk:
            offers = body["data"].get(name)
            if not offers:
                results[name] = PriceResult(success=False, error=f"'{name}' not listed on market")
                continue
            try:
                price = min(int(offer["price"]) for offer in offers)
            except (KeyError, TypeError, ValueError):
                results[name] = PriceResult(success=False, error=f"'{name}' has malformed offers")
                continue
            results[name] = PriceResult(success=True, price=price)
        return results
