"""
Read-only product catalog.

The catalog file is the upstream skin dump (``{"lastSync", "skins": [...]}``).
Each load builds a complete new index and swaps it in with a single
assignment, so a lookup running during ``reload`` sees either the old index
or the new one.
"""
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from casehub.config import ItemRarity, rarity_id_map
from casehub.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CatalogItem:
    catalog_id: str
    market_hash_name: str
    display_name: str
    rarity: ItemRarity
    category_name: Optional[str] = None
    image_url: Optional[str] = None
    price: Optional[int] = None


def map_rarity(rarity_id: str | None) -> ItemRarity:
    mapped = rarity_id_map.get((rarity_id or "").lower())
    if mapped is None:
        logger.warning("Unknown rarity id=%s, defaulting to CONSUMER", rarity_id)
        return ItemRarity.CONSUMER
    return mapped


class _CatalogIndex:
    def __init__(self, items: list[CatalogItem]):
        self.items = items
        self.by_id: dict[str, CatalogItem] = {}
        self.by_name: dict[str, CatalogItem] = {}
        self.by_category: dict[str, list[CatalogItem]] = {}
        self.by_rarity: dict[ItemRarity, list[CatalogItem]] = {}
        for item in items:
            self.by_id[item.catalog_id] = item
            self.by_name[item.market_hash_name] = item
            if item.category_name:
                self.by_category.setdefault(item.category_name.lower(), []).append(item)
            self.by_rarity.setdefault(item.rarity, []).append(item)


def _parse_record(record: dict) -> CatalogItem:
    rarity = record.get("rarity") or {}
    category = record.get("category") or {}
    price = record.get("price")
    return CatalogItem(
        catalog_id=str(record["id"]),
        market_hash_name=record["market_hash_name"],
        display_name=record.get("name") or record["market_hash_name"],
        rarity=map_rarity(rarity.get("id")),
        category_name=category.get("name"),
        image_url=record.get("image"),
        price=int(price) if price is not None else None,
    )


class ProductCatalog:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._index = _CatalogIndex([])
        self._reload_lock = threading.Lock()
        self.last_sync: Optional[str] = None

    def __len__(self) -> int:
        return len(self._index.items)

    def load(self) -> int:
        """
        Build the index from ``path``. A missing, unreadable or empty file
        leaves the current index in place. Returns the number of indexed items.
        """
        with self._reload_lock:
            if not self.path.exists():
                logger.error("Catalog file not found path=%s", self.path)
                return len(self._index.items)
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.error("Catalog file unreadable path=%s error=%s", self.path, exc)
                return len(self._index.items)

            records = data.get("skins") or []
            if not records:
                logger.warning("Catalog file is empty path=%s", self.path)
                return len(self._index.items)

            items = []
            for record in records:
                try:
                    items.append(_parse_record(record))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed catalog record error=%s", exc)
            self._index = _CatalogIndex(items)
            self.last_sync = data.get("lastSync")
            logger.info("Catalog loaded path=%s items=%s categories=%s", self.path, len(items), len(self._index.by_category))
            return len(items)

    def reload(self) -> int:
        return self.load()

    def lookup(self, key: str) -> Optional[CatalogItem]:
        index = self._index
        return index.by_name.get(key) or index.by_id.get(key)

    def by_category(self, category_name: str) -> list[CatalogItem]:
        return list(self._index.by_category.get(category_name.lower(), []))

    def by_rarity(self, rarity: ItemRarity) -> list[CatalogItem]:
        return list(self._index.by_rarity.get(rarity, []))
