# bundlewallet/services/catalog.py
from typing import Optional

from sqlalchemy.orm import Session

from bundlewallet.errors import OutOfStock, ProductNotFound, ValidationError
from bundlewallet.models import Product


def create_product(db: Session, name: str, price_cents: int, stock: Optional[int] = None) -> Product:
    if price_cents < 0:
        raise ValidationError("Price must be >= 0")
    product = Product(name=name, price_cents=price_cents, stock=stock)
    db.add(product)
    db.flush()
    return product


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise ProductNotFound(product_id)
    return product


def check_stock(product: Product, quantity: int) -> None:
    # Depletion is handled by inventory; settlement only refuses what can't be served
    if product.stock is not None and product.stock < quantity:
        raise OutOfStock(product.id, quantity, product.stock)
