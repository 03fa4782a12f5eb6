from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from pymongo.database import Database

import database
import inventory
import ledger
import payments
import sales
from clock import now_utc, start_of_day
from errors import ShopError
from logging_setup import configure_logging
from schemas import (
    Address,
    Batch,
    Customer,
    CustomerType,
    Installment,
    InstallmentFrequency,
    PaymentMethod,
    PaymentSchedule,
    PaymentTerms,
    Product,
    Supplier,
    Unit,
)
from settings import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_json)
    if database.db is not None:
        database.ensure_indexes(database.db)
    logger.info("ShopSmart API starting up", version=settings.app_version)
    yield
    logger.info("ShopSmart API shutting down")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    # Raised when a merged update no longer validates as a stored document
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    return JSONResponse(status_code=422, content={"detail": errors})


# ------------------ Dependencies ------------------

def get_db() -> Database:
    if database.db is None:
        raise HTTPException(503, "Database not configured")
    return database.db


def get_shop(x_shop_id: str = Header(..., description="Owning shop id from the auth layer")) -> str:
    return x_shop_id


# ------------------ Utilities ------------------

def product_view(product: Product) -> Dict[str, Any]:
    d = product.model_dump(mode="json")
    d["profit_margin"] = inventory.profit_margin(product)
    return d


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


# ------------------ Schemas ------------------

class CustomerIn(BaseModel):
    name: str
    phone: str
    alternate_phone: Optional[str] = None
    email: Optional[str] = None
    customer_type: CustomerType = 'individual'
    address: Optional[Address] = None
    business_name: Optional[str] = None
    gst_number: Optional[str] = None
    pan_number: Optional[str] = None
    credit_limit: float = Field(0, ge=0)
    payment_terms: PaymentTerms = 'immediate'
    custom_payment_days: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class CustomerPatch(BaseModel):
    name: Optional[str] = None
    alternate_phone: Optional[str] = None
    email: Optional[str] = None
    customer_type: Optional[CustomerType] = None
    address: Optional[Address] = None
    business_name: Optional[str] = None
    gst_number: Optional[str] = None
    pan_number: Optional[str] = None
    credit_limit: Optional[float] = Field(None, ge=0)
    payment_terms: Optional[PaymentTerms] = None
    custom_payment_days: Optional[int] = Field(None, ge=0)
    reminder_enabled: Optional[bool] = None
    preferred_reminder_channel: Optional[Literal['whatsapp', 'sms', 'both']] = None
    status: Optional[Literal['active', 'inactive', 'blocked', 'defaulter']] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


class TransactionIn(BaseModel):
    customer_id: str
    type: Literal['credit', 'payment']
    amount: float = Field(..., gt=0)
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = None
    bill_number: Optional[str] = None
    transaction_date: Optional[datetime] = None


class DeleteReason(BaseModel):
    reason: Optional[str] = None


class ProductIn(BaseModel):
    name: str
    cost_price: float = Field(..., ge=0)
    selling_price: float = Field(..., ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    gst_rate: Literal[0, 5, 12, 18, 28] = 0
    hsn_code: Optional[str] = None
    current_stock: float = Field(0, ge=0)
    unit: Unit = 'pcs'
    min_stock: float = Field(10, ge=0)
    max_stock: Optional[float] = Field(None, ge=0)
    has_expiry: bool = False
    expiry_alert_days: int = Field(30, ge=0)
    default_shelf_life: int = Field(365, ge=0)
    default_supplier: Optional[Supplier] = None


class ProductPatch(BaseModel):
    name: Optional[str] = None
    cost_price: Optional[float] = Field(None, ge=0)
    selling_price: Optional[float] = Field(None, ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    gst_rate: Optional[Literal[0, 5, 12, 18, 28]] = None
    min_stock: Optional[float] = Field(None, ge=0)
    max_stock: Optional[float] = Field(None, ge=0)
    has_expiry: Optional[bool] = None
    expiry_alert_days: Optional[int] = Field(None, ge=0)
    show_in_store: Optional[bool] = None


class StockAdjustmentIn(BaseModel):
    type: Literal['add', 'remove', 'set']
    adjustment: float = Field(..., ge=0)
    reason: Optional[str] = None


class SaleItemIn(BaseModel):
    product_id: str
    quantity: float = Field(..., gt=0)
    price: Optional[float] = Field(None, ge=0)


class SaleIn(BaseModel):
    customer_id: Optional[str] = None
    items: List[SaleItemIn]
    payment_mode: Literal['Cash', 'UPI', 'Card', 'Credit', 'Other'] = 'Cash'


class ScheduleIn(BaseModel):
    customer_id: str
    total_amount: float = Field(..., gt=0)
    due_date: datetime
    transaction: Optional[str] = None
    invoice: Optional[str] = None
    number_of_installments: int = Field(1, ge=1)
    installment_frequency: InstallmentFrequency = 'monthly'
    installments: Optional[List[Installment]] = None
    reminder_enabled: bool = True
    reminder_days: List[int] = Field(default_factory=lambda: [3, 1, 0])
    late_fee_enabled: bool = False
    late_fee_type: Literal['fixed', 'percentage'] = 'fixed'
    late_fee_value: float = Field(0, ge=0)
    promised_date: Optional[datetime] = None
    promised_amount: Optional[float] = Field(None, ge=0)
    promise_notes: Optional[str] = None
    description: Optional[str] = None


class PaymentIn(BaseModel):
    amount: float = Field(..., gt=0)
    installment_index: Optional[int] = Field(None, ge=0)


# ------------------ Health/Test ------------------
@app.get("/")
def read_root():
    return {"message": "ShopSmart Backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if settings.database_url else "Not Set",
        "database_name": "Set" if settings.database_name else "Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()
            response["database"] = "Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"Error: {str(e)[:120]}"
    return response


# ------------------ Customers ------------------
@app.get("/api/customers")
def list_customers(q: Optional[str] = None, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    filt: Dict[str, Any] = {"user": shop}
    if q:
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"phone": {"$regex": q, "$options": "i"}},
            {"email": {"$regex": q, "$options": "i"}},
        ]
    return [ledger.customer_view(c) for c in database.find(db, Customer, filt, sort=[("name", 1)])]


@app.post("/api/customers", status_code=201)
def create_customer(payload: CustomerIn, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    data = payload.model_dump(exclude_none=True)
    customer = Customer(user=shop, **data)
    return ledger.customer_view(ledger.create_customer(db, customer))


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return ledger.customer_view(database.get(db, Customer, shop, customer_id))


@app.patch("/api/customers/{customer_id}")
def update_customer(customer_id: str, payload: CustomerPatch,
                    db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    customer = database.get(db, Customer, shop, customer_id)
    # balance only moves through ledger transactions
    merged = {**customer.model_dump(), **payload.model_dump(exclude_unset=True)}
    updated = Customer.model_validate(merged)
    return ledger.customer_view(database.save(db, updated))


@app.delete("/api/customers/{customer_id}")
def delete_customer(customer_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    ledger.delete_customer(db, shop, customer_id)
    return {"status": "ok"}


@app.get("/api/customers/{customer_id}/transactions")
def get_customer_transactions(customer_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return [dump(t) for t in ledger.customer_transactions(db, shop, customer_id)]


# ------------------ Ledger transactions ------------------
@app.get("/api/transactions/today")
def transactions_today(db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return ledger.today_summary(db, shop)


@app.post("/api/transactions", status_code=201)
def create_transaction(payload: TransactionIn, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    txn, customer = ledger.post_transaction(
        db, shop, payload.customer_id, payload.type, payload.amount,
        payment_method=payload.payment_method,
        description=payload.description,
        bill_number=payload.bill_number,
        transaction_date=payload.transaction_date,
    )
    return {
        "transaction": dump(txn),
        "customer": {"id": customer.id, "name": customer.name, "balance": customer.current_balance},
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, payload: Optional[DeleteReason] = None,
                       db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    reason = payload.reason if payload else None
    _, customer = ledger.delete_transaction(db, shop, transaction_id, reason)
    return {"status": "ok", "customer": {"id": customer.id, "balance": customer.current_balance}}


# ------------------ Products / Stock ------------------
@app.get("/api/products")
def list_products(include_inactive: bool = False, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    filt: Dict[str, Any] = {"user": shop}
    if not include_inactive:
        filt["is_active"] = True
    return [product_view(p) for p in database.find(db, Product, filt, sort=[("name", 1)])]


@app.get("/api/products/alerts/expiring")
def expiring_products(days: Optional[int] = Query(None, ge=0),
                      db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    window = settings.default_expiry_window_days if days is None else days
    return [product_view(p) for p in inventory.get_expiring_products(db, shop, window)]


@app.get("/api/products/alerts/low-stock")
def low_stock_products(db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return [product_view(p) for p in inventory.get_low_stock_products(db, shop)]


@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    product = Product(user=shop, **payload.model_dump(exclude_none=True))
    return product_view(inventory.create_product(db, product))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    product = database.get(db, Product, shop, product_id)
    return product_view(inventory.derive_product(product, now_utc()))


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductPatch,
                   db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    product = database.get(db, Product, shop, product_id)
    merged = {**product.model_dump(), **payload.model_dump(exclude_unset=True)}
    return product_view(inventory.save_product(db, Product.model_validate(merged)))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    inventory.deactivate_product(db, shop, product_id)
    return {"status": "ok"}


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, payload: StockAdjustmentIn,
                 db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    product, previous = inventory.adjust_stock(db, shop, product_id, payload.type, payload.adjustment)
    return {
        "product_id": product.id,
        "name": product.name,
        "previous_stock": previous,
        "current_stock": product.current_stock,
        "stock_status": product.stock_status,
        "adjustment": payload.adjustment,
        "type": payload.type,
    }


@app.post("/api/products/{product_id}/batches", status_code=201)
def add_batch(product_id: str, payload: Batch, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return product_view(inventory.restock_batch(db, shop, product_id, payload))


@app.post("/api/products/{product_id}/batches/refresh")
def refresh_batches(product_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return product_view(inventory.refresh_batch_statuses(db, shop, product_id))


# ------------------ Sales ------------------
@app.get("/api/sales")
def list_sales(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    payment_mode: Optional[str] = None,
    customer_id: Optional[str] = None,
    db: Database = Depends(get_db),
    shop: str = Depends(get_shop),
):
    return [dump(s) for s in sales.list_sales(db, shop, date_from, date_to, payment_mode, customer_id)]


@app.post("/api/sales", status_code=201)
def create_sale(payload: SaleIn, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    sale = sales.create_sale(
        db, shop,
        [it.model_dump() for it in payload.items],
        payment_mode=payload.payment_mode,
        customer_id=payload.customer_id,
    )
    return dump(sale)


# ------------------ Payment schedules ------------------
@app.get("/api/payment-schedules/upcoming")
def upcoming_dues(days: Optional[int] = Query(None, ge=0),
                  db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    window = settings.default_upcoming_days if days is None else days
    return [dump(s) for s in payments.get_upcoming_dues(db, shop, window)]


@app.get("/api/payment-schedules/overdue")
def overdue_payments(db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return [dump(s) for s in payments.get_overdue_payments(db, shop)]


@app.get("/api/payment-schedules/today")
def todays_collections(db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    return [dump(s) for s in payments.get_todays_collections(db, shop)]


@app.post("/api/payment-schedules", status_code=201)
def create_schedule(payload: ScheduleIn, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    data = payload.model_dump(exclude_none=True, exclude={"customer_id", "installments"})
    installments = payload.installments
    if installments is None and payload.number_of_installments > 1:
        installments = payments.build_installments(
            payload.total_amount, payload.number_of_installments,
            payload.due_date, payload.installment_frequency,
        )
    schedule = PaymentSchedule(user=shop, customer=payload.customer_id,
                               installments=installments or [], **data)
    return dump(payments.create_schedule(db, schedule))


@app.get("/api/payment-schedules/{schedule_id}")
def get_schedule(schedule_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    schedule = database.get(db, PaymentSchedule, shop, schedule_id)
    return dump(payments.derive_schedule(schedule, now_utc()))


@app.post("/api/payment-schedules/{schedule_id}/payments")
def record_schedule_payment(schedule_id: str, payload: PaymentIn,
                            db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    schedule = database.get(db, PaymentSchedule, shop, schedule_id)
    return dump(payments.record_payment(db, schedule, payload.amount, payload.installment_index))


@app.post("/api/payment-schedules/{schedule_id}/late-fee")
def apply_late_fee(schedule_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    schedule = database.get(db, PaymentSchedule, shop, schedule_id)
    return dump(payments.apply_late_fee(db, schedule))


@app.post("/api/payment-schedules/{schedule_id}/cancel")
def cancel_schedule(schedule_id: str, db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    schedule = database.get(db, PaymentSchedule, shop, schedule_id)
    return dump(payments.cancel_schedule(db, schedule))


# ------------------ Analytics ------------------
@app.get("/api/stats/summary")
def stats_summary(db: Database = Depends(get_db), shop: str = Depends(get_shop)):
    now = now_utc()
    start_day = start_of_day(now)
    start_month = datetime(now.year, now.month, 1, tzinfo=timezone.utc)

    def sales_since(start: datetime) -> float:
        pipeline = [
            {"$match": database.mongo_filter({"user": shop, "created_at": {"$gte": start}})},
            {"$group": {"_id": None, "sum": {"$sum": "$total_amount"}}}
        ]
        res = list(db["sale"].aggregate(pipeline))
        return float(res[0]["sum"]) if res else 0.0

    pipeline_receivables = [
        {"$match": {"user": shop}},
        {"$group": {
            "_id": None,
            "receivable": {"$sum": {"$cond": [{"$gt": ["$current_balance", 0]}, "$current_balance", 0]}},
            "customers": {"$sum": 1},
        }}
    ]
    res = list(db["customer"].aggregate(pipeline_receivables))
    receivable = float(res[0]["receivable"]) if res else 0.0

    overdue = payments.get_overdue_payments(db, shop, now)

    return {
        "sales_today": round(sales_since(start_day), 2),
        "sales_month": round(sales_since(start_month), 2),
        "total_receivable": round(receivable, 2),
        "ledger_today": ledger.today_summary(db, shop, now),
        "low_stock_count": len(inventory.get_low_stock_products(db, shop)),
        "expiring_count": len(inventory.get_expiring_products(
            db, shop, settings.default_expiry_window_days, now)),
        "overdue_count": len(overdue),
        "overdue_amount": round(sum(s.remaining_amount for s in overdue), 2),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
