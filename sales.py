"""Counter sales: price the line items, take them out of stock, record the sale."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo.database import Database

import database as store
import inventory
import ledger
from clock import now_utc
from errors import InvalidOperation, ShopError
from schemas import Customer, Product, Sale, SaleItem

logger = structlog.get_logger()


def create_sale(
    db: Database,
    user: str,
    items: List[Dict[str, Any]],
    payment_mode: str = 'Cash',
    customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Sale:
    """Each item is ``{"product_id", "quantity", "price"?}``; price defaults to the selling price.

    Stock is checked for every line before any product is touched, and stock
    already taken is put back if a later write fails. A ``Credit`` sale is
    posted to the customer's ledger as a credit entry.
    """
    now = now or now_utc()
    if not items:
        raise InvalidOperation("Sale has no items")
    if payment_mode == 'Credit' and not customer_id:
        raise InvalidOperation("Credit sales need a customer")

    customer = store.get(db, Customer, user, customer_id) if customer_id else None

    products: Dict[str, Product] = {}
    requested: Dict[str, float] = {}
    items_out = []
    total = 0.0
    for it in items:
        pid = it["product_id"]
        prod = products.get(pid) or store.get(db, Product, user, pid)
        products[pid] = prod
        qty = float(it["quantity"])
        if qty <= 0:
            raise InvalidOperation("Quantity must be positive", product=prod.name)
        price = float(it["price"] if it.get("price") is not None else prod.selling_price)
        requested[pid] = requested.get(pid, 0) + qty
        if prod.current_stock < requested[pid]:
            raise InvalidOperation(f"Insufficient stock for {prod.name}", product_id=pid,
                                   current_stock=prod.current_stock, requested=requested[pid])
        total += price * qty
        items_out.append(SaleItem(product_id=pid, product_name=prod.name, quantity=qty, price=price))

    sale = Sale(
        user=user,
        customer_id=customer_id,
        customer_name=customer.name if customer else None,
        items=items_out,
        payment_mode=payment_mode,
        total_amount=round(total, 2),
    )

    removed: List[Tuple[str, float]] = []
    try:
        for pid, qty in requested.items():
            prod = products[pid]
            inventory.apply_stock_adjustment(prod, 'remove', qty)
            inventory.save_product(db, prod, now)
            removed.append((pid, qty))
        sale = store.insert(db, sale, now)
    except ShopError:
        _restore_stock(db, user, removed, now)
        raise

    if payment_mode == 'Credit' and sale.total_amount > 0:
        ledger.post_transaction(db, user, customer_id, 'credit', sale.total_amount,
                                description=f"Sale {sale.id}", now=now)
    logger.info("sale_recorded", sale_id=sale.id, total=sale.total_amount, mode=payment_mode)
    return sale


def _restore_stock(db: Database, user: str, removed: List[Tuple[str, float]], now: datetime) -> None:
    """Put back stock taken by a sale that could not be completed."""
    for pid, qty in removed:
        inventory.adjust_stock(db, user, pid, 'add', qty, now)
    if removed:
        logger.warning("sale_stock_restored", products=[pid for pid, _ in removed])


def list_sales(
    db: Database,
    user: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    payment_mode: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> List[Sale]:
    filt: Dict[str, Any] = {"user": user}
    if payment_mode:
        filt["payment_mode"] = payment_mode
    if customer_id:
        filt["customer_id"] = customer_id
    if date_from or date_to:
        rng: Dict[str, Any] = {}
        if date_from:
            rng["$gte"] = date_from
        if date_to:
            rng["$lte"] = date_to
        filt["created_at"] = rng
    return store.find(db, Sale, filt, sort=[("created_at", -1)])
