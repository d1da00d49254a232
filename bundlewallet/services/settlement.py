# bundlewallet/services/settlement.py
import logging
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from bundlewallet.db import unit_of_work
from bundlewallet.errors import (
    AccountNotFound, EmptyCart, InsufficientBalance, LedgerError, OrderNotFound, ValidationError
)
from bundlewallet.metrics import settlement_errors, settlement_latency, settlements_total
from bundlewallet.models import (
    Account, CartItem, ItemStatus, LedgerEntry, LedgerEntryType, Order, OrderItem, OrderSource
)
from bundlewallet.retry import run_with_retry
from bundlewallet.services.cart import get_cart
from bundlewallet.services.catalog import check_stock, get_product
from bundlewallet.services.ledger import apply_ledger_entry
from bundlewallet.services.reconciliation import page_info

logger = logging.getLogger(__name__)


@dataclass
class OrderLine:
    product_id: int
    quantity: int
    dest_number: Optional[str] = None
    unit_price_cents: Optional[int] = None


def order_reference(order_id: int) -> str:
    return f"order:{order_id}"


def _lock_account(db: Session, account_id: int) -> Account:
    # Serializes settlements per account so the balance check can't go stale
    account = db.execute(
        select(Account).where(Account.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if not account:
        raise AccountNotFound(account_id)
    return account


def _require_non_negative(entry: LedgerEntry, total: int) -> None:
    # Backends without row locks (SQLite) can pass the check on a stale read
    if entry.balance < 0:
        raise InsufficientBalance(entry.previous_balance, total)


def _settle(source: OrderSource, func):
    start = perf_counter()
    try:
        order = run_with_retry(f"settlement.{source.value}", func)
    except LedgerError as e:
        settlement_errors.labels(e.kind).inc()
        raise
    finally:
        settlement_latency.observe(perf_counter() - start)
    settlements_total.labels(source.value).inc()
    return order


def submit_cart(account_id: int, dest_number: Optional[str] = None) -> Order:
    """
    Turn the account's cart into an order, in one atomic unit of work:
      - lock the account row, re-read the cart with products
      - total = sum(current catalog price x quantity)
      - verify balance >= total
      - create the order and its Pending items (charged unit price snapshotted)
      - debit through the ledger with reference order:<id>
      - delete the cart's items
    Any failure leaves no order, no debit and the cart untouched.
    """
    def attempt() -> Order:
        with unit_of_work() as db:
            account = _lock_account(db, account_id)

            cart = get_cart(db, account_id)
            if not cart or not cart.items:
                raise EmptyCart()

            total = 0
            for item in cart.items:
                check_stock(item.product, item.quantity)
                total += item.product.price_cents * item.quantity

            if account.loan_balance < total:
                raise InsufficientBalance(account.loan_balance, total)

            order = Order(
                account_id=account_id,
                dest_number=dest_number,
                status=ItemStatus.PENDING,
                source=OrderSource.CART,
                items=[
                    OrderItem(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        dest_number=item.dest_number,
                        status=ItemStatus.PENDING,
                        unit_price_cents=item.product.price_cents,
                    )
                    for item in cart.items
                ],
            )
            db.add(order)
            db.flush()

            entry = apply_ledger_entry(
                db, account_id, -total, LedgerEntryType.ORDER,
                f"Order #{order.id} placed with {len(order.items)} items",
                order_reference(order.id),
            )
            _require_non_negative(entry, total)

            db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))

            logger.info(f"settlement: order {order.id} for account {account_id}, total={total}")
            return order

    return _settle(OrderSource.CART, attempt)


def create_direct_order(account_id: int, items: Sequence[OrderLine], total_amount: int) -> Order:
    """
    Create and debit an order for an externally priced item list, bypassing the cart.

    ``total_amount`` is taken as given: the calling system has already priced
    the items and is trusted to have done so correctly. Only the balance check,
    product existence and stock are verified here.
    """
    if not items:
        raise ValidationError("Order must contain at least one item")
    if total_amount < 0:
        raise ValidationError("Total amount must be >= 0", {"total_amount": total_amount})
    for line in items:
        if line.quantity < 1:
            raise ValidationError("Quantity must be at least 1", {"product_id": line.product_id})

    def attempt() -> Order:
        with unit_of_work() as db:
            account = _lock_account(db, account_id)

            for line in items:
                check_stock(get_product(db, line.product_id), line.quantity)

            if account.loan_balance < total_amount:
                raise InsufficientBalance(account.loan_balance, total_amount)

            order = Order(
                account_id=account_id,
                dest_number=items[0].dest_number,
                status=ItemStatus.PENDING,
                source=OrderSource.DIRECT,
                items=[
                    OrderItem(
                        product_id=line.product_id,
                        quantity=line.quantity,
                        dest_number=line.dest_number,
                        status=ItemStatus.PENDING,
                        unit_price_cents=line.unit_price_cents,
                    )
                    for line in items
                ],
            )
            db.add(order)
            db.flush()

            entry = apply_ledger_entry(
                db, account_id, -total_amount, LedgerEntryType.ORDER,
                f"Order #{order.id} placed via direct order",
                order_reference(order.id),
            )
            _require_non_negative(entry, total_amount)

            logger.info(f"settlement: direct order {order.id} for account {account_id}, total={total_amount}")
            return order

    return _settle(OrderSource.DIRECT, attempt)


def get_order(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).options(selectinload(Order.items))
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFound(order_id)
    return order


def get_order_history(db: Session, account_id: int, limit: int = 50) -> List[Order]:
    return list(db.execute(
        select(Order)
        .where(Order.account_id == account_id)
        .options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
    ).scalars().all())


def get_orders_by_ids(db: Session, order_ids: Sequence[int]) -> List[Order]:
    """Orders among ``order_ids`` that exist, newest first. Unknown ids are skipped."""
    if not order_ids:
        return []
    return list(db.execute(
        select(Order)
        .where(Order.id.in_(set(order_ids)))
        .options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).scalars().all())


def list_orders(
    db: Session,
    status: Optional[ItemStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    account_id: Optional[int] = None,
    page: int = 1,
    limit: int = 100,
) -> Dict[str, Any]:
    """Admin listing across all accounts, newest first, one page at a time."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be >= 1")

    base = select(Order)
    if status is not None:
        base = base.where(Order.status == status)
    if account_id is not None:
        base = base.where(Order.account_id == account_id)
    if start is not None:
        base = base.where(Order.created_at >= start)
    if end is not None:
        base = base.where(Order.created_at <= end)

    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    orders = db.execute(
        base.options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {"data": list(orders), "pagination": page_info(page, limit, total)}
