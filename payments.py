"""
Payment schedules: due dates, installments, late fees.

Status is level-triggered: ``derive_schedule`` recomputes it from the amounts
and ``now`` on every save and on every read through the query views, so an
untouched schedule turns overdue once its due date passes. ``cancelled`` is
only ever set by the owner and survives derivation.
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from dateutil.relativedelta import relativedelta
from pymongo.database import Database

import database as store
import ledger
from clock import as_utc, days_from, now_utc, start_of_day
from errors import ConcurrencyConflict, InvalidOperation, NotFound
from schemas import Customer, Installment, InstallmentFrequency, PaymentSchedule

logger = structlog.get_logger()

OPEN_STATUSES = ('pending', 'partial')


def derive_status(amount: float, paid: float, due_date: datetime, now: datetime,
                  late_fee: float = 0.0) -> str:
    if paid >= amount + late_fee:
        return 'paid'
    if paid > 0:
        return 'partial'
    if as_utc(now) > as_utc(due_date):
        return 'overdue'
    return 'pending'


def derive_schedule(schedule: PaymentSchedule, now: datetime) -> PaymentSchedule:
    schedule.remaining_amount = schedule.total_amount - schedule.paid_amount + schedule.late_fee_applied

    if schedule.status != 'cancelled':
        schedule.status = derive_status(schedule.total_amount, schedule.paid_amount,
                                        schedule.due_date, now, schedule.late_fee_applied)

    for inst in schedule.installments:
        inst.status = derive_status(inst.amount, inst.paid_amount, inst.due_date, now)
    return schedule


def _step(frequency: InstallmentFrequency, n: int):
    if frequency == 'weekly':
        return timedelta(weeks=n)
    if frequency == 'bi_weekly':
        return timedelta(weeks=2 * n)
    return relativedelta(months=n)


def build_installments(total: float, count: int, first_due: datetime,
                       frequency: InstallmentFrequency = 'monthly') -> List[Installment]:
    """Equal installments; rounding cents go to the last one."""
    if count < 1:
        raise InvalidOperation("Number of installments must be at least 1", count=count)
    share = round(total / count, 2)
    installments = []
    for n in range(count):
        amount = share if n < count - 1 else round(total - share * (count - 1), 2)
        installments.append(Installment(
            installment_number=n + 1,
            amount=amount,
            due_date=as_utc(first_due) + _step(frequency, n),
        ))
    return installments


def late_fee_for(schedule: PaymentSchedule) -> float:
    # Always charged on the full amount, even once part of it is paid
    if schedule.late_fee_type == 'fixed':
        return schedule.late_fee_value
    return schedule.total_amount * schedule.late_fee_value / 100


# ------------------ Persistence ------------------

def create_schedule(db: Database, schedule: PaymentSchedule,
                    now: Optional[datetime] = None) -> PaymentSchedule:
    now = now or now_utc()
    store.get(db, Customer, schedule.user, schedule.customer)
    if schedule.installments:
        schedule.number_of_installments = len(schedule.installments)
        schedule.schedule_type = 'installment'
    derive_schedule(schedule, now)
    schedule = store.insert(db, schedule, now)
    logger.info("payment_schedule_created", schedule_id=schedule.id, customer_id=schedule.customer,
                total=schedule.total_amount, status=schedule.status)
    return schedule


def save_schedule(db: Database, schedule: PaymentSchedule,
                  now: Optional[datetime] = None) -> PaymentSchedule:
    now = now or now_utc()
    derive_schedule(schedule, now)
    return store.save(db, schedule, now)


def record_payment(db: Database, schedule: PaymentSchedule, amount: float,
                   installment_index: Optional[int] = None,
                   now: Optional[datetime] = None) -> PaymentSchedule:
    now = now or now_utc()
    if math.isnan(amount) or amount <= 0:
        raise InvalidOperation("Payment amount must be positive", amount=amount)
    if schedule.status == 'cancelled':
        raise InvalidOperation("Schedule is cancelled", schedule_id=schedule.id)

    due = schedule.due_date
    if installment_index is not None:
        if not 0 <= installment_index < len(schedule.installments):
            raise InvalidOperation("No such installment", index=installment_index)
        inst = schedule.installments[installment_index]
        inst.paid_amount += amount
        inst.paid_date = now
        due = inst.due_date

    schedule.paid_amount += amount
    schedule = save_schedule(db, schedule, now)
    logger.info("schedule_payment_recorded", schedule_id=schedule.id, amount=amount,
                installment=installment_index, status=schedule.status)

    # Payment is already stored; counter failures are logged only.
    try:
        customer = store.get(db, Customer, schedule.user, schedule.customer)
        ledger.note_payment_timeliness(db, customer, as_utc(now) <= as_utc(due), now)
    except (NotFound, ConcurrencyConflict) as e:
        logger.warning("payment_timeliness_not_recorded", schedule_id=schedule.id,
                       customer_id=schedule.customer, error=e.message)
    return schedule


def apply_late_fee(db: Database, schedule: PaymentSchedule,
                   now: Optional[datetime] = None) -> PaymentSchedule:
    now = now or now_utc()
    derive_schedule(schedule, now)
    if not schedule.late_fee_enabled or schedule.status != 'overdue':
        return schedule

    fee = late_fee_for(schedule)
    schedule.late_fee_applied += fee
    schedule = save_schedule(db, schedule, now)
    logger.info("late_fee_applied", schedule_id=schedule.id, fee=fee, total_fees=schedule.late_fee_applied)
    return schedule


def cancel_schedule(db: Database, schedule: PaymentSchedule,
                    now: Optional[datetime] = None) -> PaymentSchedule:
    schedule.status = 'cancelled'
    return save_schedule(db, schedule, now)


# ------------------ Query views ------------------

def _open_schedules(db: Database, user: str, due_filter: dict, now: datetime,
                    statuses=OPEN_STATUSES) -> List[PaymentSchedule]:
    candidates = store.find(db, PaymentSchedule, {
        "user": user,
        "status": {"$ne": 'cancelled'},
        "due_date": due_filter,
    }, sort=[("due_date", 1)])
    return [s for s in (derive_schedule(c, now) for c in candidates) if s.status in statuses]


def get_upcoming_dues(db: Database, user: str, days: int = 7,
                      now: Optional[datetime] = None) -> List[PaymentSchedule]:
    now = now or now_utc()
    return _open_schedules(db, user, {"$gte": now, "$lte": days_from(now, days)}, now)


def get_overdue_payments(db: Database, user: str,
                         now: Optional[datetime] = None) -> List[PaymentSchedule]:
    """Unpaid schedules past their due date, including partially paid ones."""
    now = now or now_utc()
    return _open_schedules(db, user, {"$lt": now}, now, statuses=OPEN_STATUSES + ('overdue',))


def get_todays_collections(db: Database, user: str,
                           now: Optional[datetime] = None) -> List[PaymentSchedule]:
    now = now or now_utc()
    today = start_of_day(now)
    # A schedule due earlier today is overdue by now and belongs to the overdue view.
    return _open_schedules(db, user, {"$gte": today, "$lt": days_from(today, 1)}, now)
