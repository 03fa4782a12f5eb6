"""Tests for counter sales and their effect on stock and the ledger."""

import pytest

import database
import inventory
import ledger
import sales
from errors import ConcurrencyConflict, InvalidOperation
from schemas import Customer, Product

from conftest import SHOP_ID


@pytest.fixture
def rice(db, now):
    return inventory.create_product(db, Product(
        user=SHOP_ID, name="Basmati Rice 1kg", cost_price=90, selling_price=120,
        current_stock=12, min_stock=5), now)


@pytest.fixture
def oil(db, now):
    return inventory.create_product(db, Product(
        user=SHOP_ID, name="Sunflower Oil 1l", cost_price=140, selling_price=165,
        current_stock=2, min_stock=3), now)


def test_sale_takes_items_out_of_stock(db, now, rice, oil):
    sale = sales.create_sale(db, SHOP_ID, [
        {"product_id": rice.id, "quantity": 10},
        {"product_id": oil.id, "quantity": 1, "price": 160},
    ], payment_mode='UPI', now=now)

    assert sale.total_amount == 1360
    assert [i.product_name for i in sale.items] == ["Basmati Rice 1kg", "Sunflower Oil 1l"]

    rice = database.get(db, Product, SHOP_ID, rice.id)
    assert rice.current_stock == 2
    assert rice.stock_status == 'low_stock'


def test_insufficient_stock_moves_nothing(db, now, rice, oil):
    with pytest.raises(InvalidOperation):
        sales.create_sale(db, SHOP_ID, [
            {"product_id": rice.id, "quantity": 1},
            {"product_id": oil.id, "quantity": 3},
        ], now=now)

    assert database.get(db, Product, SHOP_ID, rice.id).current_stock == 12
    assert db["sale"].count_documents({}) == 0


def test_repeated_lines_are_checked_together(db, now, oil):
    with pytest.raises(InvalidOperation):
        sales.create_sale(db, SHOP_ID, [
            {"product_id": oil.id, "quantity": 2},
            {"product_id": oil.id, "quantity": 1},
        ], now=now)


def test_credit_sale_posts_to_ledger(db, now, rice):
    c = ledger.create_customer(db, Customer(user=SHOP_ID, name="Imran", phone="9988776655"), now)
    sale = sales.create_sale(db, SHOP_ID, [{"product_id": rice.id, "quantity": 2}],
                             payment_mode='Credit', customer_id=c.id, now=now)

    assert sale.customer_name == "Imran"
    c = database.get(db, Customer, SHOP_ID, c.id)
    assert c.current_balance == 240
    assert c.stats.total_purchases == 240


def test_credit_sale_needs_customer(db, now, rice):
    with pytest.raises(InvalidOperation):
        sales.create_sale(db, SHOP_ID, [{"product_id": rice.id, "quantity": 1}],
                          payment_mode='Credit', now=now)


def test_list_sales_by_mode(db, now, rice):
    sales.create_sale(db, SHOP_ID, [{"product_id": rice.id, "quantity": 1}], payment_mode='Cash', now=now)
    sales.create_sale(db, SHOP_ID, [{"product_id": rice.id, "quantity": 1}], payment_mode='Card', now=now)
    assert [s.payment_mode for s in sales.list_sales(db, SHOP_ID, payment_mode='Card')] == ['Card']


def test_failed_write_puts_stock_back(db, now, rice, oil, monkeypatch):
    save_product = inventory.save_product
    calls = []

    def flaky_save(db_, product, now_=None):
        calls.append(product.name)
        if len(calls) == 2:
            raise ConcurrencyConflict("Product changed")
        return save_product(db_, product, now_)

    monkeypatch.setattr(inventory, "save_product", flaky_save)
    with pytest.raises(ConcurrencyConflict):
        sales.create_sale(db, SHOP_ID, [
            {"product_id": rice.id, "quantity": 3},
            {"product_id": oil.id, "quantity": 1},
        ], now=now)

    assert database.get(db, Product, SHOP_ID, rice.id).current_stock == 12
    assert database.get(db, Product, SHOP_ID, oil.id).current_stock == 2
    assert db["sale"].count_documents({}) == 0
