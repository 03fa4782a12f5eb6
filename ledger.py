"""
Customer ledger rules.

Credit position and trust score are derived from the stored customer; the
running statistics are updated on every credit/payment transaction by
``update_stats``. Balance changes are made by ``post_transaction`` before the
statistics are refreshed, so ``highest_balance`` sees the new balance.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo.database import Database

import database as store
from clock import now_utc, start_of_day, days_from
from errors import DuplicateRecord, InvalidOperation
from schemas import Customer, LedgerTransaction, PaymentMethod

logger = structlog.get_logger()

PAYMENT_TERM_DAYS = {
    'immediate': 0,
    'net_7': 7,
    'net_15': 15,
    'net_30': 30,
    'net_45': 45,
    'net_60': 60,
}

LEDGER_TYPES = ('credit', 'payment')


# ------------------ Derived values ------------------

def is_over_credit_limit(customer: Customer) -> bool:
    if customer.credit_limit == 0:
        return False
    return customer.current_balance > customer.credit_limit


def available_credit(customer: Customer) -> float:
    """Remaining credit; ``math.inf`` when the customer has no limit."""
    if customer.credit_limit == 0:
        return math.inf
    return max(0.0, customer.credit_limit - customer.current_balance)


def payment_score(customer: Customer) -> int:
    total = customer.stats.on_time_payments + customer.stats.late_payments
    if total == 0:
        return 100
    return round(customer.stats.on_time_payments / total * 100)


def payment_due_days(customer: Customer) -> int:
    if customer.payment_terms == 'custom':
        return customer.custom_payment_days or 0
    return PAYMENT_TERM_DAYS.get(customer.payment_terms, 0)


def customer_view(customer: Customer) -> Dict[str, Any]:
    """Stored fields plus the derived credit position, JSON-safe."""
    credit = available_credit(customer)
    return {
        **customer.model_dump(mode="json"),
        "is_over_credit_limit": is_over_credit_limit(customer),
        "available_credit": None if math.isinf(credit) else credit,
        "payment_score": payment_score(customer),
        "payment_due_days": payment_due_days(customer),
    }


# ------------------ Statistics ------------------

def _check_entry(kind: str, amount: float) -> None:
    if kind not in LEDGER_TYPES:
        raise InvalidOperation(f"Unknown ledger entry type: {kind}", type=kind)
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or math.isnan(amount):
        raise InvalidOperation("Amount must be a number", amount=amount)
    if amount < 0:
        raise InvalidOperation("Amount cannot be negative", amount=amount)


def apply_stats(customer: Customer, kind: str, amount: float, now: datetime) -> Customer:
    _check_entry(kind, amount)
    stats = customer.stats
    if kind == 'credit':
        stats.total_purchases += amount
        stats.last_purchase_date = now
    else:
        stats.total_payments += amount
        stats.last_payment_date = now

    stats.total_transactions += 1
    if stats.total_transactions > 0:
        stats.average_order_value = stats.total_purchases / stats.total_transactions

    if customer.current_balance > stats.highest_balance:
        stats.highest_balance = customer.current_balance
    return customer


def revert_stats(customer: Customer, kind: str, amount: float) -> Customer:
    """Undo one ``apply_stats`` call; the balance watermark is history and stays."""
    _check_entry(kind, amount)
    stats = customer.stats
    if kind == 'credit':
        stats.total_purchases = max(0.0, stats.total_purchases - amount)
    else:
        stats.total_payments = max(0.0, stats.total_payments - amount)
    stats.total_transactions = max(0, stats.total_transactions - 1)
    if stats.total_transactions > 0:
        stats.average_order_value = stats.total_purchases / stats.total_transactions
    else:
        stats.average_order_value = 0.0
    return customer


def update_stats(db: Database, customer: Customer, kind: str, amount: float,
                 now: Optional[datetime] = None) -> Customer:
    now = now or now_utc()
    apply_stats(customer, kind, amount, now)
    return store.save(db, customer, now)


def note_payment_timeliness(db: Database, customer: Customer, on_time: bool,
                            now: Optional[datetime] = None) -> Customer:
    if on_time:
        customer.stats.on_time_payments += 1
    else:
        customer.stats.late_payments += 1
    return store.save(db, customer, now)


# ------------------ Customers ------------------

def create_customer(db: Database, customer: Customer, now: Optional[datetime] = None) -> Customer:
    existing = db["customer"].find_one({"user": customer.user, "phone": customer.phone})
    if existing:
        raise DuplicateRecord("Customer with this phone already exists", phone=customer.phone)
    customer.current_balance = 0.0
    customer = store.insert(db, customer, now)
    logger.info("customer_created", customer_id=customer.id, user=customer.user)
    return customer


def delete_customer(db: Database, user: str, customer_id: str) -> None:
    customer = store.get(db, Customer, user, customer_id)
    if customer.current_balance != 0:
        raise InvalidOperation("Cannot delete customer with pending balance",
                               balance=customer.current_balance)
    store.delete(db, Customer, user, customer_id)
    logger.info("customer_deleted", customer_id=customer_id, user=user)


def due_date_for(customer: Customer, now: Optional[datetime] = None) -> datetime:
    return days_from(now or now_utc(), payment_due_days(customer))


# ------------------ Transactions ------------------

def _balance_delta(kind: str, amount: float) -> float:
    return amount if kind == 'credit' else -amount


def post_transaction(
    db: Database,
    user: str,
    customer_id: str,
    kind: str,
    amount: float,
    payment_method: Optional[PaymentMethod] = None,
    description: Optional[str] = None,
    bill_number: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[LedgerTransaction, Customer]:
    """Move the customer's balance, refresh their stats and record the entry."""
    now = now or now_utc()
    _check_entry(kind, amount)
    if amount == 0:
        raise InvalidOperation("Amount must be greater than 0", amount=amount)

    customer = store.get(db, Customer, user, customer_id)
    customer.current_balance += _balance_delta(kind, amount)
    customer = update_stats(db, customer, kind, amount, now)

    txn = LedgerTransaction(
        user=user,
        customer=customer_id,
        type=kind,
        amount=amount,
        balance_after=customer.current_balance,
        payment_method=(payment_method or 'cash') if kind == 'payment' else None,
        description=description,
        bill_number=bill_number,
        transaction_date=transaction_date or now,
    )
    txn = store.insert(db, txn, now)
    logger.info("ledger_entry_posted", customer_id=customer_id, type=kind, amount=amount,
                balance=customer.current_balance)
    return txn, customer


def delete_transaction(db: Database, user: str, transaction_id: str,
                       reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> Tuple[LedgerTransaction, Customer]:
    """Soft delete an entry and reverse its balance movement."""
    now = now or now_utc()
    txn = store.get(db, LedgerTransaction, user, transaction_id)
    if txn.is_deleted:
        raise InvalidOperation("Transaction already deleted", id=transaction_id)

    customer = store.get(db, Customer, user, txn.customer)
    customer.current_balance -= _balance_delta(txn.type, txn.amount)
    revert_stats(customer, txn.type, txn.amount)
    customer = store.save(db, customer, now)

    txn.is_deleted = True
    txn.deleted_at = now
    txn.deleted_reason = reason or 'Deleted by user'
    txn = store.save(db, txn, now)
    logger.info("ledger_entry_reversed", transaction_id=transaction_id,
                balance=customer.current_balance)
    return txn, customer


def customer_transactions(db: Database, user: str, customer_id: str) -> List[LedgerTransaction]:
    store.get(db, Customer, user, customer_id)
    return store.find(db, LedgerTransaction,
                      {"user": user, "customer": customer_id, "is_deleted": False},
                      sort=[("transaction_date", -1)])


def today_summary(db: Database, user: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    today = start_of_day(now or now_utc())
    tomorrow = days_from(today, 1)
    result = {
        "date": today.isoformat(),
        "credit": {"total": 0.0, "count": 0},
        "payment": {"total": 0.0, "count": 0},
    }
    entries = store.find(db, LedgerTransaction, {
        "user": user,
        "is_deleted": False,
        "transaction_date": {"$gte": today, "$lt": tomorrow},
    })
    for txn in entries:
        bucket = result[txn.type]
        bucket["total"] += txn.amount
        bucket["count"] += 1
    return result
