# bundlewallet/models.py
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey,
    Index, Integer, String, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

LEDGER_REFERENCE_INDEX = "uq_ledger_account_type_reference"


class LedgerEntryType(str, enum.Enum):
    ORDER = "ORDER"
    ORDER_ITEM_REFUND = "ORDER_ITEM_REFUND"
    ORDER_ITEMS_REFUND = "ORDER_ITEMS_REFUND"
    TOPUP_APPROVED = "TOPUP_APPROVED"
    LOAN_ASSIGNMENT = "LOAN_ASSIGNMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    LOAN_DEDUCTION = "LOAN_DEDUCTION"
    REFUND = "REFUND"
    ORDER_STATUS = "ORDER_STATUS"
    ORDER_ITEM_STATUS = "ORDER_ITEM_STATUS"
    ORDER_ITEMS_STATUS = "ORDER_ITEMS_STATUS"
    LOAN_STATUS = "LOAN_STATUS"


class ItemStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class OrderSource(str, enum.Enum):
    CART = "cart"
    DIRECT = "direct"


def now_utc():
    return datetime.now(timezone.utc)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    # Written only by services.ledger.apply_ledger_entry
    loan_balance = Column(BigInteger, nullable=False, default=0)
    has_loan = Column(Boolean, nullable=False, default=False)
    admin_loan_balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("admin_loan_balance >= 0", name="accounts_admin_loan_nonneg"),
    )

    ledger_entries = relationship("LedgerEntry", back_populates="account")
    cart = relationship("Cart", back_populates="account", uselist=False)
    orders = relationship("Order", back_populates="account")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    stock = Column(Integer, nullable=True)  # NULL = not tracked
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="products_price_nonneg"),
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    amount = Column(BigInteger, nullable=False)  # credit > 0, debit < 0
    balance = Column(BigInteger, nullable=False)
    previous_balance = Column(BigInteger, nullable=False)
    type = Column(Enum(LedgerEntryType), nullable=False)
    description = Column(String(500), nullable=False, default="")
    reference = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    account = relationship("Account", back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint("previous_balance + amount = balance", name="ledger_balance_chain"),
        # NULL references never collide, so only keyed entries are deduplicated
        UniqueConstraint("account_id", "type", "reference", name=LEDGER_REFERENCE_INDEX),
        Index("ix_ledger_account_created", "account_id", "created_at"),
    )


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    account = relationship("Account", back_populates="cart")
    items = relationship("CartItem", back_populates="cart", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # unit price x quantity at the time the item was added
    price_cents = Column(BigInteger, nullable=False)
    dest_number = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="cart_items_quantity_positive"),
    )

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    dest_number = Column(String(32), nullable=True)
    # Denormalized; the per-item status is authoritative
    status = Column(Enum(ItemStatus), nullable=False, default=ItemStatus.PENDING)
    source = Column(Enum(OrderSource), nullable=False, default=OrderSource.CART)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    account = relationship("Account", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    dest_number = Column(String(32), nullable=True)
    status = Column(Enum(ItemStatus), nullable=False, default=ItemStatus.PENDING, index=True)
    # Unit price actually charged; NULL falls back to the catalog price
    unit_price_cents = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_items_quantity_positive"),
    )

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
