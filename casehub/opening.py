"""
Case opening as a single unit of work.

Inside one database transaction: lock the account row, validate the case and
the balance, draw an item, debit the balance with a guarded UPDATE, grant the
item, record the opening and bump the case counter. Nothing is visible until
the commit; any failure rolls all of it back.

After the commit the live feed is notified and the account's derived stats
are refreshed. Both are best effort: their failures are logged and never
reach the caller.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import desc, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from casehub.config import InventoryStatus
from casehub.errors import (
    InactiveResourceError,
    InsufficientFundsError,
    IntegrityFault,
    NotFoundError,
    ValidationError,
)
from casehub.logging_config import get_logger
from casehub.models import models
from casehub.notifications import LiveFeedNotifier
from casehub.selection import ItemSelector

logger = get_logger(__name__)


@dataclass
class OpeningResult:
    opening_id: int
    account_id: str
    case_id: int
    case_name: str
    item_id: int
    item_name: str
    item_price: int
    item_rarity: str
    item_image: Optional[str]
    new_balance: int
    opened_at: datetime

    def won_item(self) -> dict:
        return {
            "id": self.item_id,
            "name": self.item_name,
            "price": self.item_price,
            "rarity": self.item_rarity,
            "imageUrl": self.item_image,
        }

    def feed_event(self) -> dict:
        return {
            "id": self.opening_id,
            "accountId": self.account_id,
            "caseId": self.case_id,
            "caseName": self.case_name,
            "itemId": self.item_id,
            "itemName": self.item_name,
            "itemImage": self.item_image,
            "itemRarity": self.item_rarity,
            "price": self.item_price,
            "openedAt": self.opened_at.isoformat(),
        }


class CaseOpeningService:
    def __init__(self, notifier: LiveFeedNotifier | None = None, selector: ItemSelector | None = None):
        self.notifier = notifier
        self.selector = selector or ItemSelector()

    def open_case(self, db: Session, account_id: str, case_id: int) -> OpeningResult:
        try:
            result = self._open_in_transaction(db, account_id, case_id)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.critical("Integrity violation while opening accountId=%s caseId=%s error=%s", account_id, case_id, exc)
            raise IntegrityFault("balance invariant violated", context={"accountId": account_id, "caseId": case_id}) from exc
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Case opened openingId=%s accountId=%s caseId=%s itemId=%s newBalance=%s",
            result.opening_id,
            account_id,
            case_id,
            result.item_id,
            result.new_balance,
        )
        self._publish(result)
        self._refresh_stats(db, result)
        return result

    def _open_in_transaction(self, db: Session, account_id: str, case_id: int) -> OpeningResult:
        account = (
            db.query(models.Account)
            .filter(models.Account.id == account_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if not account:
            raise NotFoundError(f"account {account_id} not found")
        if account.is_blocked:
            raise ValidationError("account is blocked")

        case = (
            db.query(models.Case)
            .options(selectinload(models.Case.items))
            .filter(models.Case.id == case_id)
            .one_or_none()
        )
        if not case:
            raise NotFoundError(f"case {case_id} not found")
        if not case.is_active:
            raise InactiveResourceError(f"case {case_id} is not active")
        if not case.items:
            raise ValidationError(f"case {case_id} has no items")

        price = case.price
        if account.balance < price:
            raise InsufficientFundsError("insufficient funds", context={"balance": account.balance, "price": price})

        item_id = self.selector.select(case.items)
        item = db.get(models.Item, item_id)
        if not item:
            raise NotFoundError(f"item {item_id} not found")

        debited = db.execute(
            update(models.Account)
            .where(models.Account.id == account_id, models.Account.balance >= price)
            .values(balance=models.Account.balance - price)
            .execution_options(synchronize_session=False)
        )
        if debited.rowcount != 1:
            raise InsufficientFundsError("insufficient funds")
        db.refresh(account)

        opened_at = datetime.now(timezone.utc)
        db.add(models.InventoryEntry(
            account_id=account_id,
            item_id=item.id,
            status=InventoryStatus.OWNED.value,
            acquired_at=opened_at,
        ))
        opening = models.OpeningRecord(
            account_id=account_id,
            case_id=case.id,
            item_id=item.id,
            item_price=item.price,
            opened_at=opened_at,
        )
        db.add(opening)
        db.execute(
            update(models.Case)
            .where(models.Case.id == case.id)
            .values(open_count=models.Case.open_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.flush()

        return OpeningResult(
            opening_id=opening.id,
            account_id=account_id,
            case_id=case.id,
            case_name=case.name,
            item_id=item.id,
            item_name=item.display_name,
            item_price=item.price,
            item_rarity=item.rarity,
            item_image=item.image_url,
            new_balance=account.balance,
            opened_at=opened_at,
        )

    def _publish(self, result: OpeningResult):
        if self.notifier is None:
            return
        try:
            self.notifier.publish(result.feed_event())
        except Exception:  # noqa: BLE001
            logger.exception("Live feed publish failed openingId=%s", result.opening_id)

    def _refresh_stats(self, db: Session, result: OpeningResult):
        try:
            update_account_stats(db, result.account_id, result.item_id, result.item_price)
            db.commit()
        except Exception:  # noqa: BLE001
            db.rollback()
            logger.exception("Account stats update failed accountId=%s openingId=%s", result.account_id, result.opening_id)


def update_account_stats(db: Session, account_id: str, item_id: int, item_price: int) -> models.AccountStats:
    """
    Recompute the most opened case and keep the best drop. A drop only
    replaces the recorded best when strictly more valuable.
    """
    stats = db.get(models.AccountStats, account_id)
    if stats is None:
        stats = models.AccountStats(account_id=account_id, total_openings=0)
        db.add(stats)

    per_case = (
        db.query(models.OpeningRecord.case_id, func.count(models.OpeningRecord.id).label("opened"))
        .filter(models.OpeningRecord.account_id == account_id)
        .group_by(models.OpeningRecord.case_id)
        .order_by(desc("opened"), models.OpeningRecord.case_id)
        .all()
    )
    stats.total_openings = sum(row.opened for row in per_case)
    if per_case:
        stats.most_opened_case_id = per_case[0].case_id

    if stats.best_drop_price is None or item_price > stats.best_drop_price:
        stats.best_drop_item_id = item_id
        stats.best_drop_price = item_price
    return stats
