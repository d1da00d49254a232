# bundlewallet/services/fulfillment.py
import logging
from time import perf_counter
from typing import Dict, FrozenSet, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from bundlewallet.db import unit_of_work
from bundlewallet.errors import InvalidStatus, InvalidTransition, OrderItemNotFound, OrderNotFound
from bundlewallet.metrics import refund_latency, refunds_total
from bundlewallet.models import ItemStatus, LedgerEntry, LedgerEntryType, Order, OrderItem, now_utc
from bundlewallet.retry import run_with_retry
from bundlewallet.services.ledger import KEYED_RETRY_CONFIG, apply_once, find_entry
from bundlewallet.services.settlement import order_reference

logger = logging.getLogger(__name__)

# Completed and Cancelled are terminal. Re-applying the current status is allowed (no-op).
TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.PROCESSING, ItemStatus.CANCELLED}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.COMPLETED, ItemStatus.CANCELLED}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
}

_ALIASES = {"canceled": ItemStatus.CANCELLED}


def parse_status(value) -> ItemStatus:
    if isinstance(value, ItemStatus):
        return value
    key = str(value).strip().lower()
    for status in ItemStatus:
        if status.value.lower() == key:
            return status
    if key in _ALIASES:
        return _ALIASES[key]
    raise InvalidStatus(str(value))


def check_transition(current: ItemStatus, target: ItemStatus) -> None:
    if current != target and target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def item_refund_reference(item_id: int) -> str:
    return f"orderItem:{item_id}"


def order_refund_reference(order_id: int) -> str:
    return f"order_items_refund:{order_id}"


def _lock_order(db: Session, order_id: int) -> bool:
    """
    Take the order row's write lock for the rest of the unit of work.

    A touching UPDATE locks the row on PostgreSQL and takes the database write
    lock on SQLite, where FOR UPDATE is ignored. Returns False if no such order.
    """
    touched = db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return touched.rowcount > 0


def _item_charge(item: OrderItem) -> int:
    unit_price = item.unit_price_cents
    if unit_price is None:
        unit_price = item.product.price_cents
    return unit_price * item.quantity


def derive_order_status(order: Order) -> ItemStatus:
    statuses = {item.status for item in order.items}
    if not statuses:
        return order.status
    if statuses == {ItemStatus.CANCELLED}:
        return ItemStatus.CANCELLED
    if statuses <= {ItemStatus.COMPLETED, ItemStatus.CANCELLED}:
        return ItemStatus.COMPLETED
    if statuses & {ItemStatus.PROCESSING, ItemStatus.COMPLETED}:
        return ItemStatus.PROCESSING
    return ItemStatus.PENDING


def set_item_status(item_id: int, new_status) -> OrderItem:
    """
    Move one order item through the state machine.

    Entering Cancelled refunds the charged price x quantity once, keyed by
    orderItem:<id>, capped at what the order still has refundable. Every call
    appends a zero-amount audit entry keyed by the target status, also once.
    A duplicate or retried cancel is a no-op.
    """
    status = parse_status(new_status)

    def attempt() -> OrderItem:
        with unit_of_work() as db:
            order_id = db.execute(
                select(OrderItem.order_id).where(OrderItem.id == item_id)
            ).scalar_one_or_none()
            # item and bulk cancels both serialize on the order row
            if order_id is None or not _lock_order(db, order_id):
                raise OrderItemNotFound(item_id)

            item = db.execute(
                select(OrderItem)
                .where(OrderItem.id == item_id)
                .options(selectinload(OrderItem.order).selectinload(Order.items).selectinload(OrderItem.product),
                         selectinload(OrderItem.product))
            ).scalar_one()

            check_transition(item.status, status)
            account_id = item.order.account_id

            if status == ItemStatus.CANCELLED and item.status != ItemStatus.CANCELLED:
                amount = min(_item_charge(item), refundable_amount(db, item.order))
                if amount > 0:
                    _, created = apply_once(
                        db, account_id, amount, LedgerEntryType.ORDER_ITEM_REFUND,
                        f"Order item #{item.id} in order #{item.order_id} refunded (Amount: {amount})",
                        item_refund_reference(item.id),
                    )
                    if created:
                        refunds_total.labels("item").inc()

            item.status = status
            apply_once(
                db, account_id, 0, LedgerEntryType.ORDER_ITEM_STATUS,
                f"Order item #{item.id} status changed to {status.value}",
                f"order_item_status:{item.id}:{status.value}",
            )
            item.order.status = derive_order_status(item.order)
            db.flush()
            return item

    start = perf_counter()
    try:
        return run_with_retry("fulfillment.set_item_status", attempt, KEYED_RETRY_CONFIG)
    finally:
        refund_latency.observe(perf_counter() - start)


def refundable_amount(db: Session, order: Order) -> int:
    """
    What can still be credited back for an order: the original debit (or,
    without one, current catalog price x quantity) less every item and bulk
    refund already paid for it. Never negative.

    Must run after _lock_order so a concurrent cancel can't slip a refund in
    between this read and the credit.
    """
    debit = find_entry(db, order.account_id, LedgerEntryType.ORDER, order_reference(order.id))
    if debit is not None:
        charged = abs(debit.amount)
    else:
        charged = sum(item.product.price_cents * item.quantity for item in order.items)

    already_refunded = db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.account_id == order.account_id,
            or_(
                and_(
                    LedgerEntry.type == LedgerEntryType.ORDER_ITEM_REFUND,
                    LedgerEntry.reference.in_([item_refund_reference(item.id) for item in order.items]),
                ),
                and_(
                    LedgerEntry.type == LedgerEntryType.ORDER_ITEMS_REFUND,
                    LedgerEntry.reference == order_refund_reference(order.id),
                ),
            ),
        )
    ).scalar_one()

    return max(charged - int(already_refunded), 0)


def set_order_items_status(order_id: int, new_status) -> Tuple[Order, int]:
    """
    Move every item of an order to ``new_status``, all or nothing.

    A whole-order cancel refunds once (order_items_refund:<id>) the amount
    actually debited for the order, net of item refunds already made.
    Returns the order and the number of items whose status changed.
    """
    status = parse_status(new_status)

    def attempt() -> Tuple[Order, int]:
        with unit_of_work() as db:
            if not _lock_order(db, order_id):
                raise OrderNotFound(order_id)
            order = db.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
            ).scalar_one()

            for item in order.items:
                check_transition(item.status, status)

            changing = [item for item in order.items if item.status != status]

            if status == ItemStatus.CANCELLED and changing:
                amount = refundable_amount(db, order)
                if amount > 0:
                    _, created = apply_once(
                        db, order.account_id, amount, LedgerEntryType.ORDER_ITEMS_REFUND,
                        f"All items in order #{order.id} refunded (Amount: {amount})",
                        order_refund_reference(order.id),
                    )
                    if created:
                        refunds_total.labels("order").inc()

            for item in changing:
                item.status = status

            apply_once(
                db, order.account_id, 0, LedgerEntryType.ORDER_ITEMS_STATUS,
                f"All items in order #{order.id} status changed to {status.value}",
                f"order_items_status:{order.id}:{status.value}",
            )
            order.status = status
            db.flush()
            logger.info(f"fulfillment: order {order.id} -> {status.value} ({len(changing)} item(s) changed)")
            return order, len(changing)

    start = perf_counter()
    try:
        return run_with_retry("fulfillment.set_order_items_status", attempt, KEYED_RETRY_CONFIG)
    finally:
        refund_latency.observe(perf_counter() - start)


def set_order_status(order_id: int, new_status) -> Order:
    """Override the order's denormalized status. Items are left alone."""
    status = parse_status(new_status)
    if status == ItemStatus.CANCELLED:
        # cancelling goes through set_order_items_status so the refund happens
        raise InvalidStatus(status.value)

    def attempt() -> Order:
        with unit_of_work() as db:
            order = db.execute(
                select(Order).where(Order.id == order_id).options(selectinload(Order.items))
            ).scalar_one_or_none()
            if not order:
                raise OrderNotFound(order_id)
            order.status = status
            apply_once(
                db, order.account_id, 0, LedgerEntryType.ORDER_STATUS,
                f"Order #{order.id} status changed to {status.value}",
                f"order_status:{order.id}:{status.value}",
            )
            db.flush()
            return order

    return run_with_retry("fulfillment.set_order_status", attempt, KEYED_RETRY_CONFIG)


def complete_processing_items() -> int:
    """Complete every item currently in Processing. Returns how many were completed."""
    with unit_of_work() as db:
        item_ids = list(db.execute(
            select(OrderItem.id).where(OrderItem.status == ItemStatus.PROCESSING).order_by(OrderItem.id)
        ).scalars().all())

    completed = 0
    for item_id in item_ids:
        try:
            set_item_status(item_id, ItemStatus.COMPLETED)
            completed += 1
        except InvalidTransition as e:
            # cancelled by someone else since we listed it
            logger.info(f"fulfillment: skipping item {item_id}: {e.message}")
    logger.info(f"fulfillment: batch completed {completed} of {len(item_ids)} processing item(s)")
    return completed
