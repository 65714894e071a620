from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from casehub.config import InventoryStatus, LedgerStatus
from casehub.database import Base


class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    username = Column(String, nullable=True)
    balance = Column(BigInteger, nullable=False, default=0)
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_account_balance_non_negative"),)


class Item(Base):
    __tablename__ = "items"
    id = Column(Integer, primary_key=True)
    market_hash_name = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    price = Column(BigInteger, nullable=False)
    rarity = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    category_name = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Case(Base):
    __tablename__ = "cases"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(BigInteger, nullable=False)
    image_url = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    open_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    items = relationship(
        "CaseItem",
        order_by="CaseItem.position",
        cascade="all, delete-orphan",
        back_populates="case",
    )


class CaseItem(Base):
    __tablename__ = "case_items"
    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    chance_percent = Column(Float, nullable=False)
    position = Column(Integer, nullable=False)
    case = relationship("Case", back_populates="items")
    item = relationship("Item")
    __table_args__ = (UniqueConstraint("case_id", "item_id", name="uq_case_item"),)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), index=True, nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default=LedgerStatus.PENDING.value)
    provider = Column(String, nullable=False)
    provider_order_ref = Column(String, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=False)
    payment_url = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    crypto_amount = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    __table_args__ = (
        UniqueConstraint("provider", "provider_order_ref", name="uq_provider_order_ref"),
        Index("ix_ledger_status_expires", "status", "expires_at"),
    )


class OpeningRecord(Base):
    __tablename__ = "opening_records"
    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), index=True, nullable=False)
    case_id = Column(Integer, ForeignKey("cases.id"), index=True, nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    item_price = Column(BigInteger, nullable=False)
    opened_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    case = relationship("Case")
    item = relationship("Item")


class InventoryEntry(Base):
    __tablename__ = "inventory_entries"
    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), index=True, nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    status = Column(String, nullable=False, default=InventoryStatus.OWNED.value)
    acquired_at = Column(DateTime(timezone=True), server_default=func.now())


class AccountStats(Base):
    __tablename__ = "account_stats"
    account_id = Column(String(64), ForeignKey("accounts.id"), primary_key=True)
    total_openings = Column(Integer, nullable=False, default=0)
    most_opened_case_id = Column(Integer, ForeignKey("cases.id"), nullable=True)
    best_drop_item_id = Column(Integer, ForeignKey("items.id"), nullable=True)
    best_drop_price = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
