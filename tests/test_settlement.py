# tests/test_settlement.py
from concurrent.futures import ThreadPoolExecutor

import pytest

import bundlewallet.services.settlement as settlement
from bundlewallet.db import SessionLocal
from bundlewallet.errors import EmptyCart, InsufficientBalance, OutOfStock, TransientStoreError, ValidationError
from bundlewallet.models import ItemStatus, LedgerEntryType, Order
from bundlewallet.services import cart
from bundlewallet.services.settlement import OrderLine, create_direct_order, get_orders_by_ids, list_orders, submit_cart


def _order_count() -> int:
    with SessionLocal() as db:
        return db.query(Order).count()


def test_submit_cart_debits_once_and_clears_cart(make_account, make_product, balance_of, entries_of):
    account_id = make_account(200)
    product_id = make_product(30)
    cart.add_item(account_id, product_id, 1, "0241234567")
    cart.add_item(account_id, product_id, 1, "0247654321")

    order = submit_cart(account_id)

    assert len(order.items) == 2
    assert all(item.status == ItemStatus.PENDING for item in order.items)
    assert all(item.unit_price_cents == 30 for item in order.items)
    assert balance_of(account_id) == 140

    debits = entries_of(account_id, LedgerEntryType.ORDER)
    assert len(debits) == 1
    assert debits[0].amount == -60
    assert debits[0].reference == f"order:{order.id}"

    with SessionLocal() as db:
        assert cart.get_cart(db, account_id).items == []


def test_settlement_prices_from_current_catalog(make_account, make_product, balance_of):
    from bundlewallet.db import unit_of_work
    from bundlewallet.models import Product

    account_id = make_account(500)
    product_id = make_product(30)
    cart.add_item(account_id, product_id, 2)

    with unit_of_work() as db:
        db.get(Product, product_id).price_cents = 45

    order = submit_cart(account_id)

    assert balance_of(account_id) == 500 - 90
    assert order.items[0].unit_price_cents == 45


def test_insufficient_balance_changes_nothing(make_account, make_product, balance_of, entries_of):
    account_id = make_account(50)
    product_id = make_product(30)
    cart.add_item(account_id, product_id, 2)

    with pytest.raises(InsufficientBalance) as exc:
        submit_cart(account_id)

    assert exc.value.details == {"balance": 50, "required": 60}
    assert balance_of(account_id) == 50
    assert entries_of(account_id, LedgerEntryType.ORDER) == []
    assert _order_count() == 0
    with SessionLocal() as db:
        assert len(cart.get_cart(db, account_id).items) == 1


def test_empty_cart_is_rejected(make_account):
    account_id = make_account(100)
    with pytest.raises(EmptyCart):
        submit_cart(account_id)


def test_out_of_stock_is_rejected(make_account, make_product, balance_of):
    account_id = make_account(100)
    product_id = make_product(10, stock=1)
    cart.add_item(account_id, product_id, 2)

    with pytest.raises(OutOfStock):
        submit_cart(account_id)
    assert balance_of(account_id) == 100


def test_fault_during_debit_rolls_back_everything(monkeypatch, make_account, make_product, balance_of, entries_of):
    account_id = make_account(200)
    product_id = make_product(30)
    cart.add_item(account_id, product_id, 2)

    def failing_apply(*args, **kwargs):
        raise TransientStoreError("injected")

    monkeypatch.setattr(settlement, "apply_ledger_entry", failing_apply)

    with pytest.raises(TransientStoreError):
        submit_cart(account_id)

    assert balance_of(account_id) == 200
    assert entries_of(account_id, LedgerEntryType.ORDER) == []
    assert _order_count() == 0
    with SessionLocal() as db:
        assert len(cart.get_cart(db, account_id).items) == 1


def test_transient_error_is_retried(monkeypatch, make_account, make_product, balance_of):
    account_id = make_account(200)
    product_id = make_product(30)
    cart.add_item(account_id, product_id, 1)

    real_apply = settlement.apply_ledger_entry
    calls = {"n": 0}

    def flaky_apply(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientStoreError("deadlock")
        return real_apply(*args, **kwargs)

    monkeypatch.setattr(settlement, "apply_ledger_entry", flaky_apply)

    submit_cart(account_id)

    assert calls["n"] == 2
    assert balance_of(account_id) == 170
    assert _order_count() == 1


def test_direct_order_uses_caller_total(make_account, make_product, balance_of, entries_of):
    account_id = make_account(100)
    product_id = make_product(30)

    order = create_direct_order(
        account_id,
        [OrderLine(product_id, 2, "0201112222", unit_price_cents=25)],
        total_amount=50,
    )

    assert order.source.value == "direct"
    assert order.dest_number == "0201112222"
    assert balance_of(account_id) == 50
    assert entries_of(account_id, LedgerEntryType.ORDER)[0].reference == f"order:{order.id}"


def test_direct_order_validation(make_account, make_product):
    account_id = make_account(100)
    product_id = make_product(30)

    with pytest.raises(ValidationError):
        create_direct_order(account_id, [], total_amount=10)
    with pytest.raises(ValidationError):
        create_direct_order(account_id, [OrderLine(product_id, 0)], total_amount=10)
    with pytest.raises(InsufficientBalance):
        create_direct_order(account_id, [OrderLine(product_id, 1)], total_amount=101)


def test_concurrent_orders_never_overdraw(make_account, make_product, balance_of):
    account_id = make_account(100)
    product_id = make_product(30)

    def place(_):
        try:
            create_direct_order(account_id, [OrderLine(product_id, 1)], total_amount=30)
            return True
        except InsufficientBalance:
            return False

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(place, range(5)))

    assert results.count(True) == 3
    assert balance_of(account_id) == 10


def test_list_orders_filters_and_pages(make_account, make_product):
    first = make_account(500)
    second = make_account(500)
    product_id = make_product(30)
    older = create_direct_order(first, [OrderLine(product_id, 1)], 30)
    newer = create_direct_order(first, [OrderLine(product_id, 1)], 30)
    other = create_direct_order(second, [OrderLine(product_id, 1)], 30)

    with SessionLocal() as db:
        page = list_orders(db, limit=2)
        assert [o.id for o in page["data"]] == [other.id, newer.id]
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["has_next"] is True

        mine = list_orders(db, account_id=first)
        assert [o.id for o in mine["data"]] == [newer.id, older.id]

        assert list_orders(db, status=ItemStatus.COMPLETED)["data"] == []
        assert list_orders(db, status=ItemStatus.PENDING)["pagination"]["total"] == 3

        with pytest.raises(ValidationError):
            list_orders(db, page=0)


def test_orders_by_ids_skips_unknown(make_account, make_product):
    account_id = make_account(100)
    product_id = make_product(30)
    order = create_direct_order(account_id, [OrderLine(product_id, 1)], 30)

    with SessionLocal() as db:
        found = get_orders_by_ids(db, [order.id, 999, order.id])
        assert [o.id for o in found] == [order.id]
        assert len(found[0].items) == 1
        assert get_orders_by_ids(db, []) == []
