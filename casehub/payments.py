"""
Deposit creation and idempotent settlement.

A deposit starts as a PENDING ledger entry. Gateway notifications (webhooks)
and the periodic poll both funnel into ``settle``, which moves the entry out
of PENDING at most once: the status change is a guarded UPDATE
(``WHERE status = 'PENDING'``) executed in the same transaction as the
balance credit, so a duplicate or concurrent delivery finds nothing to update
and becomes a no-op.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casehub.clients.gateway_a import GatewayAClient
from casehub.clients.gateway_b import GatewayBClient
from casehub.config import LedgerKind, LedgerStatus, PaymentProvider, settings
from casehub.contracts.contracts import (
    GatewayACreatePaymentRequest,
    GatewayAWebhook,
    GatewayBCreateOrderRequest,
    resolve_gateway_a_status,
    resolve_gateway_b_status,
)
from casehub.errors import (
    ExternalServiceError,
    IdempotentNoOp,
    IntegrityFault,
    NotFoundError,
    ValidationError,
)
from casehub.helpers import validate_currency
from casehub.logging_config import get_logger
from casehub.models import models

logger = get_logger(__name__)


class ReconcileOutcome(str, Enum):
    CREDITED = "CREDITED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    NOOP = "NOOP"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    ledger_entry_id: Optional[int] = None


@dataclass
class DepositOrder:
    ledger_entry_id: int
    redirect_url: Optional[str]
    provider_order_ref: Optional[str]


def minimum_amount(provider: PaymentProvider) -> int:
    if provider == PaymentProvider.GATEWAY_B:
        return settings.gateway_b_min_amount
    return settings.gateway_a_min_amount


def order_ttl(provider: PaymentProvider) -> timedelta:
    if provider == PaymentProvider.GATEWAY_B:
        return timedelta(hours=settings.gateway_b_order_ttl_hours)
    return timedelta(minutes=settings.gateway_a_order_ttl_minutes)


def _is_definitive_rejection(exc: ExternalServiceError) -> bool:
    # 429 means the order was never looked at, not turned down.
    status = exc.context.get("status")
    return not exc.timed_out and status is not None and 400 <= status < 500 and status != 429


class PaymentSettlementPipeline:
    def __init__(self, gateway_a: GatewayAClient, gateway_b: GatewayBClient):
        self.gateway_a = gateway_a
        self.gateway_b = gateway_b

    async def create_deposit(
        self,
        db: Session,
        account_id: str,
        amount: int,
        currency: str,
        provider: PaymentProvider,
        idempotency_key: str | None = None,
    ) -> DepositOrder:
        provider = PaymentProvider(provider)
        validate_currency(currency)
        minimum = minimum_amount(provider)
        if amount < minimum:
            raise ValidationError(f"minimum deposit is {minimum}")

        account = db.get(models.Account, account_id)
        if not account:
            raise NotFoundError(f"account {account_id} not found")
        if account.is_blocked:
            raise ValidationError("account is blocked")

        key = idempotency_key or str(uuid.uuid4())
        entry = db.query(models.LedgerEntry).filter(models.LedgerEntry.idempotency_key == key).first()
        if entry:
            if (entry.account_id, entry.amount, entry.provider) != (account_id, amount, provider.value):
                raise ValidationError("idempotency key reused with a different request")
            if entry.provider_order_ref or entry.status != LedgerStatus.PENDING.value:
                db.rollback()
                return DepositOrder(entry.id, entry.payment_url, entry.provider_order_ref)
            logger.info("Retrying gateway order for existing ledger entry id=%s", entry.id)
        else:
            entry = models.LedgerEntry(
                account_id=account_id,
                amount=amount,
                currency=currency,
                kind=LedgerKind.DEPOSIT.value,
                status=LedgerStatus.PENDING.value,
                provider=provider.value,
                idempotency_key=key,
                expires_at=datetime.now(timezone.utc) + order_ttl(provider),
            )
            db.add(entry)
            db.flush()
            logger.info(
                "Created pending ledger entry id=%s accountId=%s amount=%s provider=%s",
                entry.id,
                account_id,
                amount,
                provider.value,
            )
        entry_id = entry.id
        request = self._build_gateway_request(entry, provider)
        # No transaction may stay open across the gateway call.
        db.commit()

        try:
            order_ref, redirect_url, expires_at = await self._send_gateway_request(provider, request, key)
        except ExternalServiceError as exc:
            if _is_definitive_rejection(exc):
                logger.warning("Gateway rejected order ledgerEntryId=%s error=%s", entry_id, exc.message)
                self._finalize_quietly(db, entry_id, LedgerStatus.FAILED)
            else:
                logger.warning(
                    "Gateway order outcome unknown, leaving PENDING ledgerEntryId=%s timedOut=%s error=%s",
                    entry_id,
                    exc.timed_out,
                    exc.message,
                )
            raise

        values = {"provider_order_ref": order_ref, "payment_url": redirect_url}
        if expires_at:
            values["expires_at"] = expires_at
        try:
            db.execute(
                update(models.LedgerEntry)
                .where(models.LedgerEntry.id == entry_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Gateway order created ledgerEntryId=%s provider=%s orderRef=%s", entry_id, provider.value, order_ref)
        return DepositOrder(entry_id, redirect_url, order_ref)

    def _build_gateway_request(self, entry: models.LedgerEntry, provider: PaymentProvider):
        if provider == PaymentProvider.GATEWAY_A:
            return GatewayACreatePaymentRequest.from_ledger_entry(entry, settings.gateway_a_return_url)
        return GatewayBCreateOrderRequest.from_ledger_entry(entry)

    async def _send_gateway_request(self, provider: PaymentProvider, request, idempotency_key: str):
        if provider == PaymentProvider.GATEWAY_A:
            payment = await self.gateway_a.create_payment(request, idempotency_key)
            url = payment.confirmation.confirmation_url if payment.confirmation else None
            return payment.id, url, payment.expires_at
        order = await self.gateway_b.create_order(request)
        return order.tracker_id, order.payment_url, order.date_expire

    async def handle_gateway_a_webhook(self, db: Session, webhook: GatewayAWebhook) -> ReconcileResult:
        payment = webhook.object
        if settings.gateway_a_verify_status:
            payment = await self.gateway_a.get_payment(payment.id)
        return self.settle(
            db,
            PaymentProvider.GATEWAY_A,
            payment.id,
            resolve_gateway_a_status(payment.status),
            expected_entry_id=webhook.object.ledger_entry_id,
            bind_entry_id=webhook.object.ledger_entry_id,
        )

    async def handle_gateway_b_webhook(self, db: Session, tracker_id: str) -> ReconcileResult:
        # The push only names the order; its status is fetched from the gateway.
        order = await self.gateway_b.get_order(tracker_id)
        return self.settle(
            db,
            PaymentProvider.GATEWAY_B,
            tracker_id,
            resolve_gateway_b_status(order.status),
            crypto_amount=order.payed_amount,
            bind_idempotency_key=order.client_transaction_id,
        )

    async def resolve_status(self, provider: PaymentProvider, order_ref: str) -> LedgerStatus:
        if provider == PaymentProvider.GATEWAY_A:
            payment = await self.gateway_a.get_payment(order_ref)
            return resolve_gateway_a_status(payment.status)
        order = await self.gateway_b.get_order(order_ref)
        return resolve_gateway_b_status(order.status)

    def settle(
        self,
        db: Session,
        provider: PaymentProvider,
        order_ref: str,
        resolved: LedgerStatus,
        expected_entry_id: str | None = None,
        crypto_amount: float | None = None,
        bind_entry_id: str | None = None,
        bind_idempotency_key: str | None = None,
    ) -> ReconcileResult:
        """
        Move the entry behind ``order_ref`` out of PENDING at most once.

        ``bind_entry_id`` / ``bind_idempotency_key`` identify the entry when
        the create response was lost (e.g. a timeout) and the order reference
        was never recorded. Only a PENDING entry of the same provider that has
        no reference yet is bound.
        """
        try:
            entry = self._locate_entry(db, provider, order_ref, bind_entry_id, bind_idempotency_key)
            if not entry or (expected_entry_id is not None and str(entry.id) != expected_entry_id):
                db.rollback()
                logger.warning("No ledger entry for provider=%s orderRef=%s", provider, order_ref)
                return ReconcileResult(ReconcileOutcome.NOT_FOUND)

            if entry.status != LedgerStatus.PENDING.value:
                raise IdempotentNoOp(entry.id, entry.status)

            if resolved == LedgerStatus.PENDING:
                # Keeps a freshly bound reference so the poll can pick the entry up.
                db.commit()
                logger.info("Order still in progress ledgerEntryId=%s orderRef=%s", entry.id, order_ref)
                return ReconcileResult(ReconcileOutcome.PENDING, entry.id)

            entry_id = entry.id
            if resolved == LedgerStatus.COMPLETED:
                extra = {"crypto_amount": str(crypto_amount)} if crypto_amount is not None else {}
                self._transition(db, entry_id, LedgerStatus.COMPLETED, **extra)
                self._credit(db, entry.account_id, entry.amount, entry_id)
                outcome = ReconcileOutcome.CREDITED
            else:
                self._transition(db, entry_id, LedgerStatus.FAILED)
                outcome = ReconcileOutcome.FAILED
            db.commit()
        except IdempotentNoOp as noop:
            db.rollback()
            logger.info("Ledger entry already finalized id=%s status=%s", noop.entry_id, noop.status)
            return ReconcileResult(ReconcileOutcome.NOOP, noop.entry_id)
        except IntegrityError as exc:
            db.rollback()
            logger.critical("Integrity violation settling orderRef=%s error=%s", order_ref, exc)
            raise IntegrityFault("ledger invariant violated", context={"orderRef": order_ref}) from exc
        except Exception:
            db.rollback()
            raise

        logger.info("Settled ledger entry id=%s outcome=%s", entry_id, outcome.value)
        return ReconcileResult(outcome, entry_id)

    def _locate_entry(
        self,
        db: Session,
        provider: PaymentProvider,
        order_ref: str,
        bind_entry_id: str | None,
        bind_idempotency_key: str | None,
    ) -> Optional[models.LedgerEntry]:
        provider_value = PaymentProvider(provider).value
        entry = (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.provider == provider_value)
            .filter(models.LedgerEntry.provider_order_ref == order_ref)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if entry or (bind_entry_id is None and bind_idempotency_key is None):
            return entry

        query = (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.provider == provider_value)
            .filter(models.LedgerEntry.provider_order_ref.is_(None))
            .filter(models.LedgerEntry.status == LedgerStatus.PENDING.value)
        )
        if bind_entry_id is not None:
            if not str(bind_entry_id).isdigit():
                return None
            query = query.filter(models.LedgerEntry.id == int(bind_entry_id))
        if bind_idempotency_key is not None:
            query = query.filter(models.LedgerEntry.idempotency_key == bind_idempotency_key)
        orphan = query.with_for_update().populate_existing().one_or_none()
        if not orphan:
            return None

        result = db.execute(
            update(models.LedgerEntry)
            .where(models.LedgerEntry.id == orphan.id)
            .where(models.LedgerEntry.provider_order_ref.is_(None))
            .values(provider_order_ref=order_ref)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        logger.warning(
            "Bound order reference to ledger entry with a lost create response ledgerEntryId=%s provider=%s orderRef=%s",
            orphan.id,
            provider_value,
            order_ref,
        )
        return orphan

    def _transition(self, db: Session, entry_id: int, status: LedgerStatus, **values):
        result = db.execute(
            update(models.LedgerEntry)
            .where(models.LedgerEntry.id == entry_id)
            .where(models.LedgerEntry.status == LedgerStatus.PENDING.value)
            .values(status=status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IdempotentNoOp(entry_id, "finalized")

    def _credit(self, db: Session, account_id: str, amount: int, entry_id: int):
        account = (
            db.query(models.Account)
            .filter(models.Account.id == account_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if not account:
            raise IntegrityFault("ledger entry references a missing account", context={"ledgerEntryId": entry_id})
        old_balance = account.balance
        db.execute(
            update(models.Account)
            .where(models.Account.id == account_id)
            .values(balance=models.Account.balance + amount)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Credited account accountId=%s ledgerEntryId=%s oldBalance=%s amount=%s",
            account_id,
            entry_id,
            old_balance,
            amount,
        )

    def _finalize_quietly(self, db: Session, entry_id: int, status: LedgerStatus):
        try:
            self._transition(db, entry_id, status)
            db.commit()
        except IdempotentNoOp:
            db.rollback()

    async def poll_pending_entries(self, db: Session, limit: int = 100) -> list[ReconcileResult]:
        """
        Fetch authoritative status for PENDING orders and settle them. One
        failing lookup does not stop the rest.
        """
        entries = (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.status == LedgerStatus.PENDING.value)
            .filter(models.LedgerEntry.provider_order_ref.is_not(None))
            .order_by(models.LedgerEntry.created_at)
            .limit(limit)
            .all()
        )
        pending = [(e.id, PaymentProvider(e.provider), e.provider_order_ref) for e in entries]
        db.rollback()
        results = []
        for entry_id, provider, order_ref in pending:
            try:
                resolved = await self.resolve_status(provider, order_ref)
                results.append(self.settle(db, provider, order_ref, resolved))
            except ExternalServiceError as exc:
                logger.warning("Poll failed ledgerEntryId=%s error=%s", entry_id, exc.message)
        logger.info("Polled pending entries count=%s settled=%s", len(pending), sum(
            1 for r in results if r.outcome in (ReconcileOutcome.CREDITED, ReconcileOutcome.FAILED)
        ))
        return results


def sweep_expired_entries(db: Session, now: datetime | None = None) -> int:
    """
    Mark PENDING entries past their expiry as FAILED. Safety net for
    notifications that never arrived.
    """
    now = now or datetime.now(timezone.utc)
    try:
        result = db.execute(
            update(models.LedgerEntry)
            .where(models.LedgerEntry.status == LedgerStatus.PENDING.value)
            .where(models.LedgerEntry.expires_at.is_not(None))
            .where(models.LedgerEntry.expires_at < now)
            .values(status=LedgerStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    if result.rowcount:
        logger.info("Expired pending ledger entries count=%s", result.rowcount)
    return result.rowcount


def get_ledger_entry(db: Session, account_id: str, entry_id: int) -> models.LedgerEntry:
    entry = (
        db.query(models.LedgerEntry)
        .filter(models.LedgerEntry.id == entry_id)
        .filter(models.LedgerEntry.account_id == account_id)
        .first()
    )
    if not entry:
        raise NotFoundError(f"ledger entry {entry_id} not found")
    return entry


def deposit_stats(db: Session, provider: PaymentProvider) -> dict:
    def _aggregate(*filters):
        count, total = (
            db.query(func.count(models.LedgerEntry.id), func.coalesce(func.sum(models.LedgerEntry.amount), 0))
            .filter(models.LedgerEntry.provider == PaymentProvider(provider).value)
            .filter(models.LedgerEntry.kind == LedgerKind.DEPOSIT.value)
            .filter(*filters)
            .one()
        )
        return {"count": count, "amount": int(total)}

    return {
        "provider": PaymentProvider(provider).value,
        "total": _aggregate(),
        "completed": _aggregate(models.LedgerEntry.status == LedgerStatus.COMPLETED.value),
    }
