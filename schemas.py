"""
ShopSmart Database Schemas

Each Pydantic model below that derives from ``Document`` represents a MongoDB
collection. The collection name is the snake_case of the class name
(e.g., PaymentSchedule -> "payment_schedule"). Every stored document is
scoped to one shop owner through its ``user`` field.
"""

import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from clock import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

# GST format: 22AAAAA0000A1Z5
GST_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
# PAN format: AAAAA0000A
PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")

CustomerType = Literal['individual', 'business', 'retailer', 'wholesaler']
PaymentTerms = Literal['immediate', 'net_7', 'net_15', 'net_30', 'net_45', 'net_60', 'custom']
LedgerEntryType = Literal['credit', 'payment']
StockStatus = Literal['in_stock', 'low_stock', 'out_of_stock']
ExpiryStatus = Literal['fresh', 'expiring_soon', 'has_expired', 'no_expiry']
BatchStatus = Literal['fresh', 'expiring_soon', 'expired', 'sold_out']
Unit = Literal['pcs', 'kg', 'g', 'l', 'ml', 'pack', 'box', 'dozen', 'meter']
ScheduleStatus = Literal['pending', 'partial', 'paid', 'overdue', 'cancelled']
InstallmentStatus = Literal['pending', 'partial', 'paid', 'overdue']
InstallmentFrequency = Literal['weekly', 'bi_weekly', 'monthly', 'custom']
PaymentMethod = Literal['cash', 'upi', 'card', 'bank_transfer', 'cheque', 'other']


class Document(BaseModel):
    """Common fields of every stored record."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, description="String form of the MongoDB _id")
    user: str = Field(..., description="Owning shop id")
    version: int = Field(0, ge=0, description="Write counter checked on every save")
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None


# ------------------ Customer ------------------

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    landmark: Optional[str] = None


class CustomerDocument(BaseModel):
    document_type: Literal['aadhar', 'pan', 'gst_certificate', 'shop_license', 'photo', 'other']
    document_number: Optional[str] = None
    document_url: Optional[str] = None
    uploaded_at: Optional[UtcDatetime] = None
    notes: Optional[str] = None


class CustomerStats(BaseModel):
    total_purchases: float = 0.0
    total_payments: float = 0.0
    total_transactions: int = 0
    average_order_value: float = 0.0
    last_purchase_date: Optional[UtcDatetime] = None
    last_payment_date: Optional[UtcDatetime] = None
    highest_balance: float = 0.0
    on_time_payments: int = 0
    late_payments: int = 0


class Customer(Document):
    name: str = Field(..., description="Customer full name")
    phone: str = Field(..., description="Phone number, unique within a shop")
    alternate_phone: Optional[str] = None
    email: Optional[str] = None
    customer_type: CustomerType = 'individual'
    address: Address = Field(default_factory=Address)
    business_name: Optional[str] = None

    gst_number: Optional[str] = None
    pan_number: Optional[str] = None
    tax_preference: Literal['taxable', 'tax_exempt'] = 'taxable'

    credit_limit: float = Field(0.0, ge=0, description="0 means no limit")
    current_balance: float = Field(0.0, description="Positive when the customer owes the shop")
    payment_terms: PaymentTerms = 'immediate'
    custom_payment_days: Optional[int] = Field(None, ge=0)

    documents: List[CustomerDocument] = Field(default_factory=list)

    reminder_enabled: bool = True
    preferred_reminder_channel: Literal['whatsapp', 'sms', 'both'] = 'whatsapp'
    reminder_frequency: Literal['daily', 'weekly', 'on_due_date', 'custom'] = 'on_due_date'
    last_reminder_sent: Optional[UtcDatetime] = None

    loyalty_points: int = 0
    customer_group: Literal['regular', 'silver', 'gold', 'platinum'] = 'regular'
    discount_percentage: float = Field(0.0, ge=0, le=100)

    stats: CustomerStats = Field(default_factory=CustomerStats)

    status: Literal['active', 'inactive', 'blocked', 'defaulter'] = 'active'
    block_reason: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator('name', 'phone')
    @classmethod
    def strip_required_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator('gst_number')
    @classmethod
    def validate_gst_number(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not GST_PATTERN.match(v):
            raise ValueError("Invalid GST Number format")
        return v

    @field_validator('pan_number')
    @classmethod
    def validate_pan_number(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not PAN_PATTERN.match(v):
            raise ValueError("Invalid PAN Number format")
        return v


class LedgerTransaction(Document):
    customer: str = Field(..., description="Customer id")
    type: LedgerEntryType
    amount: float = Field(..., gt=0)
    balance_after: float = 0.0
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = None
    bill_number: Optional[str] = None
    transaction_date: Optional[UtcDatetime] = None
    is_deleted: bool = False
    deleted_at: Optional[UtcDatetime] = None
    deleted_reason: Optional[str] = None


# ------------------ Product / Stock ------------------

class Batch(BaseModel):
    batch_number: str
    quantity: float
    manufacturing_date: Optional[UtcDatetime] = None
    expiry_date: UtcDatetime
    purchase_date: Optional[UtcDatetime] = None
    purchase_price: Optional[float] = Field(None, ge=0)
    supplier: Optional[str] = None
    status: BatchStatus = 'fresh'


class Supplier(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class Product(Document):
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    sku: Optional[str] = Field(None, description="Unique across all shops when set")
    barcode: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None

    cost_price: float = Field(..., ge=0)
    selling_price: float = Field(..., ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    gst_rate: Literal[0, 5, 12, 18, 28] = 0
    hsn_code: Optional[str] = None

    current_stock: float = 0
    unit: Unit = 'pcs'
    min_stock: float = Field(10, ge=0, description="Low-stock threshold")
    max_stock: Optional[float] = Field(None, ge=0)

    batches: List[Batch] = Field(default_factory=list)
    has_expiry: bool = False
    default_shelf_life: int = Field(365, ge=0, description="Days")
    expiry_alert_days: int = Field(30, ge=0)
    nearest_expiry: Optional[UtcDatetime] = None

    default_supplier: Supplier = Field(default_factory=Supplier)
    is_active: bool = True
    show_in_store: bool = True

    stock_status: StockStatus = 'in_stock'
    expiry_status: ExpiryStatus = 'no_expiry'

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator('sku')
    @classmethod
    def blank_sku_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class SaleItem(BaseModel):
    product_id: str = Field(..., description="ID of product sold")
    product_name: str = Field(..., description="Cached product name at time of sale")
    quantity: float = Field(..., gt=0)
    price: float = Field(..., ge=0, description="Unit price at time of sale")


class Sale(Document):
    customer_id: Optional[str] = Field(None, description="Linked customer ID if any")
    customer_name: Optional[str] = Field(None, description="Cached customer name")
    items: List[SaleItem] = Field(default_factory=list)
    payment_mode: Literal['Cash', 'UPI', 'Card', 'Credit', 'Other'] = 'Cash'
    total_amount: float = Field(..., ge=0)


# ------------------ Payment schedules ------------------

class Installment(BaseModel):
    installment_number: int = Field(..., ge=1)
    amount: float = Field(..., ge=0)
    due_date: UtcDatetime
    paid_date: Optional[UtcDatetime] = None
    paid_amount: float = 0.0
    status: InstallmentStatus = 'pending'
    reminder_sent: bool = False
    notes: Optional[str] = None


class PaymentSchedule(Document):
    customer: str = Field(..., description="Customer id")
    transaction: Optional[str] = None
    invoice: Optional[str] = None

    total_amount: float = Field(..., ge=0)
    paid_amount: float = 0.0
    remaining_amount: float = 0.0

    schedule_type: Literal['one_time', 'installment', 'recurring'] = 'one_time'
    due_date: UtcDatetime
    installments: List[Installment] = Field(default_factory=list)
    number_of_installments: int = Field(1, ge=1)
    installment_frequency: InstallmentFrequency = 'monthly'

    status: ScheduleStatus = 'pending'

    reminder_enabled: bool = True
    reminder_days: List[int] = Field(default_factory=lambda: [3, 1, 0], description="Days before due date")
    overdue_reminder_frequency: Literal['daily', 'every_3_days', 'weekly'] = 'every_3_days'
    last_reminder_sent: Optional[UtcDatetime] = None
    reminders_sent: int = 0

    late_fee_enabled: bool = False
    late_fee_type: Literal['fixed', 'percentage'] = 'fixed'
    late_fee_value: float = Field(0.0, ge=0)
    late_fee_applied: float = 0.0

    promised_date: Optional[UtcDatetime] = None
    promised_amount: Optional[float] = Field(None, ge=0)
    promise_notes: Optional[str] = None

    description: Optional[str] = None
    notes: Optional[str] = None
