# bundlewallet/services/cart.py
import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, selectinload

from bundlewallet.db import unit_of_work
from bundlewallet.errors import AccountNotFound, ValidationError
from bundlewallet.models import Account, Cart, CartItem
from bundlewallet.retry import run_with_retry
from bundlewallet.services.catalog import get_product

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _ensure_cart(db: Session, account_id: int) -> Cart:
    cart = db.execute(select(Cart).where(Cart.account_id == account_id)).scalar_one_or_none()
    if cart:
        return cart

    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is not None:
        # Two first-adds racing for the same account both end up with the one cart
        db.execute(
            insert(Cart)
            .values(account_id=account_id)
            .on_conflict_do_nothing(index_elements=[Cart.account_id])
        )
    else:
        db.add(Cart(account_id=account_id))
        db.flush()
    return db.execute(select(Cart).where(Cart.account_id == account_id)).scalar_one()


def add_item(account_id: int, product_id: int, quantity: int, dest_number: Optional[str] = None) -> CartItem:
    """
    Add a line to the account's cart, creating the cart on first use.

    The stored line price is the catalog price x quantity at this moment;
    later catalog changes do not touch it.
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", {"quantity": quantity})

    def attempt() -> CartItem:
        with unit_of_work() as db:
            if not db.get(Account, account_id):
                raise AccountNotFound(account_id)
            product = get_product(db, product_id)
            cart = _ensure_cart(db, account_id)

            item = CartItem(
                cart_id=cart.id,
                product_id=product.id,
                quantity=quantity,
                price_cents=product.price_cents * quantity,
                dest_number=dest_number,
            )
            db.add(item)
            db.flush()
            return item

    return run_with_retry("cart.add_item", attempt)


def get_cart(db: Session, account_id: int) -> Optional[Cart]:
    return db.execute(
        select(Cart)
        .where(Cart.account_id == account_id)
        .options(selectinload(Cart.items).selectinload(CartItem.product))
    ).scalar_one_or_none()


def list_carts(db: Session) -> List[Cart]:
    return list(db.execute(
        select(Cart).options(selectinload(Cart.items)).order_by(Cart.id)
    ).scalars().all())


def remove_item(cart_item_id: int, account_id: Optional[int] = None) -> bool:
    """
    Delete one cart line. A line that is already gone (for example cleared by
    a concurrent settlement) counts as success; returns whether a row was deleted.
    """
    def attempt() -> bool:
        with unit_of_work() as db:
            stmt = delete(CartItem).where(CartItem.id == cart_item_id)
            if account_id is not None:
                stmt = stmt.where(
                    CartItem.cart_id.in_(select(Cart.id).where(Cart.account_id == account_id))
                )
            return db.execute(stmt).rowcount > 0

    removed = run_with_retry("cart.remove_item", attempt)
    if not removed:
        logger.info(f"cart: item {cart_item_id} already removed")
    return removed


def clear_cart(account_id: int) -> int:
    """Delete every line in the account's cart. No cart, or an empty one, is fine."""
    def attempt() -> int:
        with unit_of_work() as db:
            cart_ids = select(Cart.id).where(Cart.account_id == account_id)
            return db.execute(delete(CartItem).where(CartItem.cart_id.in_(cart_ids))).rowcount

    removed = run_with_retry("cart.clear_cart", attempt)
    logger.info(f"cart: cleared {removed} item(s) for account {account_id}")
    return removed
