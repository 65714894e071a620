"""
Drop-chance calculation for case authoring.

Three algorithms are supported:

* ``byPrice``: weight = 1 / price, chance = weight / sum(weights) * 100.
  Cheap items get high odds.
* ``byRarityTier``: each rarity tier has a fixed base chance
  (``RARITY_BASE_CHANCES``) split equally among the tier's items.
* ``combined``: the tier's base chance is split among its items in
  proportion to 1 / price.

Every algorithm clamps each chance to ``[min_chance, max_chance]`` and then
rescales the whole set to 100 when the clamped total is off by 0.1 or more.
"""
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from casehub.catalog import ProductCatalog
from casehub.clients.market import MarketPriceClient
from casehub.config import (
    DEFAULT_MAX_CHANCE,
    DEFAULT_MIN_CHANCE,
    NORMALIZATION_THRESHOLD,
    RARITY_BASE_CHANCES,
    ItemRarity,
    ProbabilityAlgorithm,
)
from casehub.errors import ValidationError
from casehub.logging_config import get_logger
from casehub.models import models

logger = get_logger(__name__)

CHANCE_PRECISION = 4


@dataclass
class CandidateItem:
    item_name: str
    display_name: str
    price: int
    rarity: ItemRarity
    image_url: Optional[str] = None
    item_id: Optional[int] = None
    exists_in_database: bool = False


@dataclass
class ProbabilityResult:
    algorithm: ProbabilityAlgorithm
    items: list[dict]
    total_chance: float
    warnings: list[dict] = field(default_factory=list)


def _warning(name: str, error: str, kind: str) -> dict:
    return {"itemName": name, "error": error, "type": kind}


def clamp(chance: float, min_chance: float, max_chance: float) -> float:
    return max(min_chance, min(max_chance, chance))


def normalize(chances: list[float]) -> list[float]:
    total = sum(chances)
    if total <= 0 or abs(total - 100) < NORMALIZATION_THRESHOLD:
        return list(chances)
    scale = 100 / total
    logger.debug("Normalizing chances total=%.4f scale=%.6f", total, scale)
    return [chance * scale for chance in chances]


def _group_by_tier(candidates: list[CandidateItem]) -> dict[ItemRarity, list[int]]:
    groups: dict[ItemRarity, list[int]] = {}
    for index, candidate in enumerate(candidates):
        groups.setdefault(candidate.rarity, []).append(index)
    return groups


def chances_by_price(candidates: list[CandidateItem], min_chance: float, max_chance: float) -> list[float]:
    weights = [1 / c.price for c in candidates]
    total_weight = sum(weights)
    raw = [weight / total_weight * 100 for weight in weights]
    return normalize([clamp(chance, min_chance, max_chance) for chance in raw])


def chances_by_rarity_tier(candidates: list[CandidateItem], min_chance: float, max_chance: float) -> list[float]:
    chances = [0.0] * len(candidates)
    for rarity, members in _group_by_tier(candidates).items():
        per_item = clamp(RARITY_BASE_CHANCES[rarity] / len(members), min_chance, max_chance)
        for index in members:
            chances[index] = per_item
    return normalize(chances)


def chances_combined(candidates: list[CandidateItem], min_chance: float, max_chance: float) -> list[float]:
    chances = [0.0] * len(candidates)
    for rarity, members in _group_by_tier(candidates).items():
        base = RARITY_BASE_CHANCES[rarity]
        weights = {index: 1 / candidates[index].price for index in members}
        total_weight = sum(weights.values())
        for index, weight in weights.items():
            chances[index] = clamp(weight / total_weight * base, min_chance, max_chance)
    return normalize(chances)


ALGORITHMS = {
    ProbabilityAlgorithm.BY_PRICE: chances_by_price,
    ProbabilityAlgorithm.BY_RARITY_TIER: chances_by_rarity_tier,
    ProbabilityAlgorithm.COMBINED: chances_combined,
}


def compute_chances(
    candidates: list[CandidateItem],
    algorithm: ProbabilityAlgorithm,
    min_chance: float = DEFAULT_MIN_CHANCE,
    max_chance: float = DEFAULT_MAX_CHANCE,
) -> list[float]:
    try:
        func = ALGORITHMS[ProbabilityAlgorithm(algorithm)]
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"unknown algorithm: {algorithm}") from exc
    return func(candidates, min_chance, max_chance)


class ProbabilityCalculator:
    def __init__(self, catalog: ProductCatalog, market_client: MarketPriceClient):
        self.catalog = catalog
        self.market_client = market_client

    async def resolve_items(self, db: Session, item_names: list[str]) -> tuple[list[CandidateItem], list[dict]]:
        """
        Resolve names against persisted items first, then the catalog. Items
        only known to the catalog are priced with one batched market lookup.
        """
        candidates: list[CandidateItem] = []
        warnings: list[dict] = []
        needs_price: list[str] = []
        seen: set[str] = set()

        for name in item_names:
            if name in seen:
                warnings.append(_warning(name, "item listed more than once", "DUPLICATE"))
                continue
            seen.add(name)
            item = db.query(models.Item).filter(models.Item.market_hash_name == name).first()
            if item:
                candidates.append(CandidateItem(
                    item_name=item.market_hash_name,
                    display_name=item.display_name,
                    price=item.price,
                    rarity=ItemRarity(item.rarity),
                    image_url=item.image_url,
                    item_id=item.id,
                    exists_in_database=True,
                ))
            elif self.catalog.lookup(name):
                needs_price.append(name)
            else:
                warnings.append(_warning(name, "item not found in database or catalog", "NOT_FOUND"))

        if needs_price:
            prices = await self.market_client.fetch_prices(needs_price)
            for name in needs_price:
                entry = self.catalog.lookup(name)
                result = prices.get(name)
                if not result or not result.success or not result.price:
                    error = result.error if result and result.error else "live price unavailable"
                    warnings.append(_warning(name, error, "PRICE_ERROR"))
                    continue
                candidates.append(CandidateItem(
                    item_name=entry.market_hash_name,
                    display_name=entry.display_name,
                    price=result.price,
                    rarity=entry.rarity,
                    image_url=entry.image_url,
                ))

        priced = []
        for candidate in candidates:
            if candidate.price <= 0:
                warnings.append(_warning(candidate.item_name, "price must be positive", "PRICE_ERROR"))
                continue
            priced.append(candidate)

        logger.info(
            "Resolved preview items requested=%s from_db=%s from_catalog=%s warnings=%s",
            len(item_names),
            sum(1 for c in priced if c.exists_in_database),
            sum(1 for c in priced if not c.exists_in_database),
            len(warnings),
        )
        return priced, warnings

    async def calculate(
        self,
        db: Session,
        item_names: list[str],
        algorithm: ProbabilityAlgorithm,
        min_chance: float = DEFAULT_MIN_CHANCE,
        max_chance: float = DEFAULT_MAX_CHANCE,
    ) -> ProbabilityResult:
        candidates, warnings = await self.resolve_items(db, item_names)
        if not candidates:
            reasons = "; ".join(f"{w['itemName']}: {w['error']}" for w in warnings)
            raise ValidationError(f"no items could be resolved ({reasons})", context={"warnings": warnings})

        chances = compute_chances(candidates, algorithm, min_chance, max_chance)
        items = [
            {
                "itemName": c.item_name,
                "displayName": c.display_name,
                "itemId": c.item_id,
                "price": c.price,
                "rarity": c.rarity.value,
                "imageUrl": c.image_url,
                "existsInDatabase": c.exists_in_database,
                "calculatedChance": round(chance, CHANCE_PRECISION),
            }
            for c, chance in zip(candidates, chances)
        ]
        total = round(sum(item["calculatedChance"] for item in items), 2)
        logger.info("Calculated chances algorithm=%s items=%s total=%.2f", ProbabilityAlgorithm(algorithm).value, len(items), total)
        return ProbabilityResult(algorithm=ProbabilityAlgorithm(algorithm), items=items, total_chance=total, warnings=warnings)
