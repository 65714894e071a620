from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field

from casehub.config import LedgerStatus, settings
from casehub.helpers import format_minor_units
from casehub.models import models


GATEWAY_A_SUCCESS_STATUSES = {"succeeded"}
GATEWAY_A_FAILURE_STATUSES = {"canceled", "expired"}

GATEWAY_B_SUCCESS_STATUSES = {"SUCCESS"}
GATEWAY_B_FAILURE_STATUSES = {"EXPIRED", "ERROR"}


def resolve_gateway_a_status(status: str) -> LedgerStatus:
    status = status.lower()
    if status in GATEWAY_A_SUCCESS_STATUSES:
        return LedgerStatus.COMPLETED
    if status in GATEWAY_A_FAILURE_STATUSES:
        return LedgerStatus.FAILED
    return LedgerStatus.PENDING


def resolve_gateway_b_status(status: str) -> LedgerStatus:
    status = status.upper()
    if status in GATEWAY_B_SUCCESS_STATUSES:
        return LedgerStatus.COMPLETED
    if status in GATEWAY_B_FAILURE_STATUSES:
        return LedgerStatus.FAILED
    return LedgerStatus.PENDING


class GatewayAAmount(BaseModel):
    value: str
    currency: str


class GatewayAConfirmation(BaseModel):
    type: str = "redirect"
    return_url: Optional[str] = None
    confirmation_url: Optional[str] = None


class GatewayACreatePaymentRequest(BaseModel):
    amount: GatewayAAmount
    confirmation: GatewayAConfirmation
    capture: bool = True
    metadata: dict[str, str]
    description: str

    @classmethod
    def from_ledger_entry(cls, entry: models.LedgerEntry, return_url: str) -> "GatewayACreatePaymentRequest":
        value = format_minor_units(entry.amount)
        return cls(
            amount=GatewayAAmount(value=value, currency=entry.currency),
            confirmation=GatewayAConfirmation(type="redirect", return_url=return_url),
            metadata={"accountId": entry.account_id, "ledgerEntryId": str(entry.id)},
            description=f"Balance top-up {value} {entry.currency}",
        )


class GatewayAPayment(BaseModel):
    id: str
    status: str
    amount: Optional[GatewayAAmount] = None
    confirmation: Optional[GatewayAConfirmation] = None
    metadata: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None

    @property
    def ledger_entry_id(self) -> Optional[str]:
        if not self.metadata:
            return None
        value = self.metadata.get("ledgerEntryId")
        return str(value) if value is not None else None


class GatewayAWebhook(BaseModel):
    type: str = "notification"
    event: str
    object: GatewayAPayment


class GatewayBCreateOrderRequest(BaseModel):
    token: str
    amount: float
    fiat_currency: str
    client_transaction_id: str
    payform: bool = True
    redirect_url: str
    auto_redirect: bool = True
    strict_currency: bool = True
    call_back_url: str
    merchant_uuid: Optional[str] = None

    @classmethod
    def from_ledger_entry(cls, entry: models.LedgerEntry) -> "GatewayBCreateOrderRequest":
        return cls(
            token=settings.gateway_b_token,
            amount=entry.amount / 100,  # gateway works in major units
            fiat_currency=entry.currency,
            client_transaction_id=entry.idempotency_key,
            redirect_url=f"{settings.gateway_b_redirect_url}?transactionId={entry.id}",
            call_back_url=settings.gateway_b_callback_url,
            merchant_uuid=settings.gateway_b_merchant_id,
        )


class GatewayBCreateOrderResponse(BaseModel):
    tracker_id: str
    payment_url: Optional[str] = None
    date_expire: Optional[datetime] = None


class GatewayBOrder(BaseModel):
    tracker_id: str
    status: str
    client_transaction_id: Optional[str] = None
    amount: Optional[float] = None
    payed_amount: Optional[float] = None
    fiat_amount: Optional[float] = None
    fiat_currency: Optional[str] = None
    date_expire: Optional[datetime] = None


class GatewayBWebhook(BaseModel):
    tracker_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("tracker_id", "order_reference"),
    )
