from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./casehub.db"
    log_level: str = "INFO"
    bearer_token: Optional[str] = None
    supported_currencies: list[str] = ["RUB"]
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 60
    gateway_timeout_seconds: float = 10.0

    gateway_a_base_url: AnyHttpUrl = "https://api.yookassa.ru/v3/"
    gateway_a_shop_id: str = "change_shop_id"
    gateway_a_secret_key: str = "change_secret"
    gateway_a_min_amount: int = 1000
    gateway_a_return_url: str = "http://localhost:3000/payment/success"
    gateway_a_order_ttl_minutes: int = 60
    gateway_a_verify_status: bool = False

    gateway_b_base_url: AnyHttpUrl = "https://my.exnode.io/"
    gateway_b_public_key: str = "change_public"
    gateway_b_private_key: str = "change_private"
    gateway_b_merchant_id: Optional[str] = None
    gateway_b_min_amount: int = 45000
    gateway_b_token: str = "USDTTRC"
    gateway_b_order_ttl_hours: int = 12
    gateway_b_callback_url: str = "http://localhost:8000/payments/gateway-b/webhook"
    gateway_b_redirect_url: str = "http://localhost:3000/payment/success"

    market_base_url: AnyHttpUrl = "https://market.csgo.com/api/v2/"
    market_api_key: str = "change_market_key"
    market_batch_size: int = 50

    catalog_file: str = "./data/skins-cache.json"
    live_feed_size: int = 50

    jobs_enabled: bool = True
    expiry_sweep_interval_seconds: int = 3600
    pending_poll_interval_seconds: int = 300
    price_refresh_interval_seconds: int = 86400

settings = Settings()

class LedgerKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"

class LedgerStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class PaymentProvider(str, Enum):
    GATEWAY_A = "GATEWAY_A"
    GATEWAY_B = "GATEWAY_B"

class InventoryStatus(str, Enum):
    OWNED = "OWNED"
    SOLD = "SOLD"
    WITHDRAWN = "WITHDRAWN"

class ProbabilityAlgorithm(str, Enum):
    BY_PRICE = "byPrice"
    BY_RARITY_TIER = "byRarityTier"
    COMBINED = "combined"

class ItemRarity(str, Enum):
    CONSUMER = "CONSUMER"
    INDUSTRIAL = "INDUSTRIAL"
    MIL_SPEC = "MIL_SPEC"
    RESTRICTED = "RESTRICTED"
    CLASSIFIED = "CLASSIFIED"
    COVERT = "COVERT"
    CONTRABAND = "CONTRABAND"

    @property
    def rank(self) -> int:
        return RARITY_ORDER.index(self)

# Lowest tier first.
RARITY_ORDER = list(ItemRarity)

# Base chance per tier in percent; the full table sums to 100.
RARITY_BASE_CHANCES = {
    ItemRarity.CONSUMER: 79.92,
    ItemRarity.INDUSTRIAL: 15.98,
    ItemRarity.MIL_SPEC: 3.2,
    ItemRarity.RESTRICTED: 0.64,
    ItemRarity.CLASSIFIED: 0.13,
    ItemRarity.COVERT: 0.104,
    ItemRarity.CONTRABAND: 0.026,
}

# Upstream catalog rarity ids, including the alternate naming scheme.
rarity_id_map = {
    "rarity_consumer": ItemRarity.CONSUMER,
    "rarity_common": ItemRarity.CONSUMER,
    "rarity_industrial": ItemRarity.INDUSTRIAL,
    "rarity_uncommon": ItemRarity.INDUSTRIAL,
    "rarity_milspec": ItemRarity.MIL_SPEC,
    "rarity_rare": ItemRarity.MIL_SPEC,
    "rarity_restricted": ItemRarity.RESTRICTED,
    "rarity_mythical": ItemRarity.RESTRICTED,
    "rarity_classified": ItemRarity.CLASSIFIED,
    "rarity_legendary": ItemRarity.CLASSIFIED,
    "rarity_covert": ItemRarity.COVERT,
    "rarity_ancient": ItemRarity.COVERT,
    "rarity_contraband": ItemRarity.CONTRABAND,
}

CHANCE_SUM_TOLERANCE = 0.01
NORMALIZATION_THRESHOLD = 0.1
DEFAULT_MIN_CHANCE = 0.1
DEFAULT_MAX_CHANCE = 50.0
MAX_PREVIEW_ITEMS = 50
