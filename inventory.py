"""
Product stock and batch/expiry rules.

``derive_product`` runs before every product write: it recomputes
``stock_status`` and, for expiry-tracked products, ``nearest_expiry`` and
``expiry_status`` from the batches. Batch statuses are refreshed only by an
explicit ``update_batch_statuses`` call, so a batch keeps its last status until
someone asks for it to be re-evaluated.
"""

import math
from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from pymongo.database import Database

import database as store
from clock import days_from, days_until, now_utc
from errors import DuplicateRecord, InvalidOperation
from schemas import Batch, Product

logger = structlog.get_logger()

STOCK_ADJUSTMENTS = ('add', 'remove', 'set')


def stock_status(current_stock: float, min_stock: float) -> str:
    if current_stock <= 0:
        return 'out_of_stock'
    if current_stock <= min_stock:
        return 'low_stock'
    return 'in_stock'


def classify_expiry(days_left: int, alert_days: int) -> str:
    if days_left < 0:
        return 'expired'
    if days_left <= alert_days:
        return 'expiring_soon'
    return 'fresh'


def active_batches(product: Product) -> List[Batch]:
    return [b for b in product.batches if b.quantity > 0 and b.status != 'expired']


def derive_product(product: Product, now: datetime) -> Product:
    product.stock_status = stock_status(product.current_stock, product.min_stock)

    batches = active_batches(product) if product.has_expiry else []
    if not batches:
        product.nearest_expiry = None
        product.expiry_status = 'no_expiry'
        return product

    product.nearest_expiry = min(b.expiry_date for b in batches)
    status = classify_expiry(days_until(product.nearest_expiry, now), product.expiry_alert_days)
    product.expiry_status = 'has_expired' if status == 'expired' else status
    return product


def update_batch_statuses(product: Product, now: datetime) -> Product:
    for batch in product.batches:
        if batch.quantity <= 0:
            batch.status = 'sold_out'
        else:
            batch.status = classify_expiry(days_until(batch.expiry_date, now), product.expiry_alert_days)
    return product


def profit_margin(product: Product) -> float:
    if not product.cost_price or not product.selling_price:
        return 0.0
    return round((product.selling_price - product.cost_price) / product.selling_price * 100, 2)


def apply_stock_adjustment(product: Product, kind: str, adjustment: float) -> Optional[float]:
    """Change ``current_stock``; returns the previous stock, or None for ``set``."""
    if kind not in STOCK_ADJUSTMENTS:
        raise InvalidOperation(f"Unknown stock adjustment: {kind}", type=kind)
    if math.isnan(adjustment) or adjustment < 0:
        raise InvalidOperation("Adjustment cannot be negative", adjustment=adjustment)

    previous = product.current_stock
    if kind == 'add':
        new_stock = previous + adjustment
    elif kind == 'remove':
        new_stock = previous - adjustment
    else:
        new_stock = adjustment

    if new_stock < 0:
        raise InvalidOperation("Stock cannot be negative", product=product.name,
                               current_stock=previous, adjustment=adjustment)
    product.current_stock = new_stock
    return None if kind == 'set' else previous


# ------------------ Persistence ------------------

def _check_sku(db: Database, product: Product) -> None:
    if not product.sku:
        return
    filt = {"sku": product.sku}
    if product.id:
        filt["_id"] = {"$ne": store.oid(product.id)}
    if db["product"].find_one(filt):
        raise DuplicateRecord("SKU already in use", sku=product.sku)


def create_product(db: Database, product: Product, now: Optional[datetime] = None) -> Product:
    now = now or now_utc()
    _check_sku(db, product)
    derive_product(product, now)
    product = store.insert(db, product, now)
    logger.info("product_created", product_id=product.id, user=product.user)
    return product


def save_product(db: Database, product: Product, now: Optional[datetime] = None) -> Product:
    now = now or now_utc()
    _check_sku(db, product)
    derive_product(product, now)
    return store.save(db, product, now)


def adjust_stock(db: Database, user: str, product_id: str, kind: str, adjustment: float,
                 now: Optional[datetime] = None) -> Tuple[Product, Optional[float]]:
    product = store.get(db, Product, user, product_id)
    previous = apply_stock_adjustment(product, kind, adjustment)
    product = save_product(db, product, now)
    logger.info("stock_adjusted", product_id=product_id, type=kind, adjustment=adjustment,
                current_stock=product.current_stock)
    return product, previous


def restock_batch(db: Database, user: str, product_id: str, batch: Batch,
                  now: Optional[datetime] = None) -> Product:
    now = now or now_utc()
    if batch.quantity <= 0:
        raise InvalidOperation("Batch quantity must be positive", quantity=batch.quantity)
    product = store.get(db, Product, user, product_id)
    if batch.purchase_date is None:
        batch.purchase_date = now
    product.batches.append(batch)
    product.current_stock += batch.quantity
    product = save_product(db, product, now)
    logger.info("batch_added", product_id=product_id, batch=batch.batch_number, quantity=batch.quantity)
    return product


def refresh_batch_statuses(db: Database, user: str, product_id: str,
                           now: Optional[datetime] = None) -> Product:
    now = now or now_utc()
    product = store.get(db, Product, user, product_id)
    update_batch_statuses(product, now)
    return save_product(db, product, now)


def deactivate_product(db: Database, user: str, product_id: str,
                       now: Optional[datetime] = None) -> Product:
    product = store.get(db, Product, user, product_id)
    product.is_active = False
    return save_product(db, product, now)


def get_expiring_products(db: Database, user: str, days: int = 30,
                          now: Optional[datetime] = None) -> List[Product]:
    now = now or now_utc()
    products = store.find(db, Product, {
        "user": user,
        "has_expiry": True,
        "is_active": True,
        "nearest_expiry": {"$lte": days_from(now, days)},
        "current_stock": {"$gt": 0},
    }, sort=[("nearest_expiry", 1)])
    return [derive_product(p, now) for p in products]


def get_low_stock_products(db: Database, user: str) -> List[Product]:
    return store.find(db, Product, {
        "user": user,
        "stock_status": {"$in": ['low_stock', 'out_of_stock']},
        "is_active": True,
    }, sort=[("current_stock", 1)])
