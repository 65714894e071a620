from pydantic import BaseModel, Field, model_validator
from typing import Optional

from casehub.config import (
    DEFAULT_MAX_CHANCE,
    DEFAULT_MIN_CHANCE,
    MAX_PREVIEW_ITEMS,
    PaymentProvider,
    ProbabilityAlgorithm,
)


class OpenCaseRequest(BaseModel):
    accountId: str
    caseId: int

class WonItem(BaseModel):
    id: int
    name: str
    price: int
    rarity: str
    imageUrl: Optional[str] = None

class OpenCaseResponse(BaseModel):
    openingId: int
    wonItem: WonItem
    newBalance: int

class ProbabilityOptions(BaseModel):
    minChance: float = Field(DEFAULT_MIN_CHANCE, ge=0, le=100)
    maxChance: float = Field(DEFAULT_MAX_CHANCE, gt=0, le=100)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.minChance > self.maxChance:
            raise ValueError("minChance must not exceed maxChance")
        return self

class ProbabilityPreviewRequest(BaseModel):
    itemNames: list[str] = Field(..., min_length=1, max_length=MAX_PREVIEW_ITEMS)
    algorithm: ProbabilityAlgorithm
    options: Optional[ProbabilityOptions] = None

class ItemWarning(BaseModel):
    itemName: str
    error: str
    type: str

class CalculatedItem(BaseModel):
    itemName: str
    displayName: str
    itemId: Optional[int] = None
    price: int
    rarity: str
    imageUrl: Optional[str] = None
    existsInDatabase: bool
    calculatedChance: float

class ProbabilityPreviewResponse(BaseModel):
    items: list[CalculatedItem]
    totalChance: float
    algorithm: ProbabilityAlgorithm
    warnings: list[ItemWarning]

class CaseItemInput(BaseModel):
    itemId: int
    chancePercent: float

class SaveCaseItemsRequest(BaseModel):
    items: list[CaseItemInput] = Field(..., min_length=1)

class CreateDepositRequest(BaseModel):
    accountId: str
    amount: int = Field(..., gt=0, le=100_000_000)
    currency: str = "RUB"
    provider: PaymentProvider = PaymentProvider.GATEWAY_A

class CreateDepositResponse(BaseModel):
    redirectUrl: Optional[str] = None
    ledgerEntryId: int
    providerOrderRef: Optional[str] = None
