from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import Field as PydanticField, field_validator
from sqlalchemy import Numeric
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, Enum):
    dine_in = "dine_in"
    takeaway = "takeaway"
    retail = "retail"


class OrderStatus(str, Enum):
    open = "open"
    paid = "paid"
    cancelled = "cancelled"
    debt = "debt"  # Written by the debt workflow outside this engine; never set here


TERMINAL_STATUSES = (OrderStatus.paid, OrderStatus.cancelled)


class KitchenStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    cancelled = "cancelled"


class DiscountType(str, Enum):
    percent = "percent"
    fixed = "fixed"


class TableSessionStatus(str, Enum):
    active = "active"
    completed = "completed"


class TableStatus(str, Enum):
    available = "available"
    occupied = "occupied"


class StaffRole(str, Enum):
    owner = "owner"
    manager = "manager"
    admin = "admin"
    cashier = "cashier"
    kitchen = "kitchen"


def money_field(**kwargs):
    return Field(default=Decimal("0"), sa_type=Numeric(14, 4), **kwargs)


# ============ TABLES & SESSIONS ============

class DiningTable(SQLModel, table=True):
    """Only the status and current-order pointer are written by the engine."""
    __tablename__ = "dining_table"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    status: TableStatus = Field(default=TableStatus.available)
    current_order_id: int | None = None


class TableSession(SQLModel, table=True):
    __tablename__ = "table_session"

    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="dining_table.id", index=True)
    status: TableSessionStatus = Field(default=TableSessionStatus.active, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None


# ============ CATALOG & STAFF ============

class Product(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    price: Decimal = money_field()
    is_available: bool = Field(default=True)
    display_in_kitchen: bool = Field(default=True)


class Staff(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    role: StaffRole = Field(default=StaffRole.cashier)
    pin_hash: str | None = None  # bcrypt
    is_active: bool = Field(default=True)


# ============ ORDERS ============

class Voucher(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True)  # Stored upper-case
    type: DiscountType
    value: Decimal = money_field()
    min_order_amount: Decimal = money_field()
    max_discount_amount: Decimal | None = Field(default=None, sa_type=Numeric(14, 4))
    usage_count: int = Field(default=0)
    usage_limit: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = Field(default=True)


class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_type: OrderType = Field(default=OrderType.dine_in)
    status: OrderStatus = Field(default=OrderStatus.open, index=True)

    # Money (total == subtotal - discount_amount + surcharge_amount)
    subtotal: Decimal = money_field()
    discount_amount: Decimal = money_field()
    discount_reason: str | None = None
    surcharge_amount: Decimal = money_field()
    total: Decimal = money_field()

    table_id: int | None = Field(default=None, foreign_key="dining_table.id", index=True)
    table_session_id: int | None = Field(default=None, foreign_key="table_session.id", index=True)
    customer_id: int | None = None
    user_id: int | None = None  # Cashier who opened the order
    note: str | None = None

    voucher_id: int | None = Field(default=None, foreign_key="voucher.id")
    voucher_code: str | None = None

    created_at: datetime = Field(default_factory=utcnow)

    # Payment tracking
    paid_at: datetime | None = None

    # Cancellation tracking
    cancelled_at: datetime | None = None
    cancelled_by: int | None = None  # Staff id whose PIN authorised it
    cancel_reason: str | None = None


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)  # Reassigned by split / partial pay

    # Either a catalog product...
    product_id: int | None = Field(default=None, foreign_key="product.id")
    product_name: str | None = None  # Snapshot of product name at order time
    # ...or an open item
    open_item_name: str | None = None
    open_item_price: Decimal | None = Field(default=None, sa_type=Numeric(14, 4))

    quantity: int
    unit_price: Decimal = money_field()  # Snapshot of price at order time
    note: str | None = None

    # Kitchen tracking
    display_in_kitchen: bool = Field(default=False)
    kitchen_status: KitchenStatus = Field(default=KitchenStatus.pending, index=True)
    kitchen_started_at: datetime | None = None
    kitchen_ready_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.product_name or self.open_item_name or ""


class Payment(SQLModel, table=True):
    """Append-only: rows are never updated or deleted."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    method: str
    amount: Decimal = money_field()
    received_amount: Decimal | None = Field(default=None, sa_type=Numeric(14, 4))
    change_amount: Decimal | None = Field(default=None, sa_type=Numeric(14, 4))
    reference: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int | None = Field(default=None, index=True)
    action: str = Field(index=True)
    target_type: str | None = None
    target_id: str | None = Field(default=None, index=True)
    old_value: str | None = None  # JSON
    new_value: str | None = None  # JSON
    reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# Request/Response Models
class OrderCreate(SQLModel):
    order_type: OrderType = OrderType.dine_in
    table_id: int | None = None
    table_session_id: int | None = None
    customer_id: int | None = None
    note: str | None = None


class CatalogItem(SQLModel):
    kind: Literal["catalog"] = "catalog"
    product_id: int
    quantity: int = Field(default=1, gt=0)
    note: str | None = Field(default=None, max_length=255)


class AdHocItem(SQLModel):
    kind: Literal["open"] = "open"
    name: str = Field(min_length=1, max_length=100)
    price: Decimal = Field(gt=0)
    quantity: int = Field(default=1, gt=0)
    note: str | None = Field(default=None, max_length=255)
    display_in_kitchen: bool = False


ItemSpec = Annotated[CatalogItem | AdHocItem, PydanticField(discriminator="kind")]


class ItemNoteUpdate(SQLModel):
    note: str | None = Field(default=None, max_length=255)


class RemoveItemRequest(SQLModel):
    pin: str | None = None
    reason: str | None = None


class CancelRequest(SQLModel):
    pin: str | None = None
    reason: str | None = None


class DiscountRequest(SQLModel):
    type: DiscountType
    value: Decimal = Field(gt=0)
    reason: str | None = None
    pin: str | None = None


class PaymentIn(SQLModel):
    method: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    received_amount: Decimal | None = None
    change_amount: Decimal | None = None
    reference: str | None = None


class PaymentRequest(SQLModel):
    payments: list[PaymentIn]
    voucher_code: str | None = None


class PartialPaymentRequest(SQLModel):
    item_ids: list[int]
    payments: list[PaymentIn]
    discount_amount: Decimal | None = Field(default=None, ge=0)
    discount_reason: str | None = None


class SplitRequest(SQLModel):
    item_ids: list[int]


class VoucherValidate(SQLModel):
    code: str
    order_total: Decimal = Field(ge=0)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip()


class KitchenStatusUpdate(SQLModel):
    status: KitchenStatus
