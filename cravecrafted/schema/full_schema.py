import enum
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from uuid6 import uuid7
from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Column, SQLModel, Field, Relationship, String
from cravecrafted.common.utils import now

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    ADMIN = "admin"


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    PAYMENT_CONFIRMED = "Payment_Confirmed"
    PROCESSING = "Processing"
    READY_TO_SHIP = "Ready_to_Ship"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out_for_Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    PAYMENT_FAILED = "Payment_Failed"
    RETURNED = "Returned"
    REFUNDED = "Refunded"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    COD = "cod"


class PaymentType(str, enum.Enum):
    ONLINE = "online"
    CASH_ON_DELIVERY = "cash_on_delivery"


class Recurrence(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class SubscriptionType(str, enum.Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    CUSTOM = "custom"


class PaymentRecordStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class PaymentEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    ERRORED = "errored"


class Users(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(
        default_factory=uuid7,
        sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False)
    )
    email: str = Field(sa_column=Column(String(320), nullable=False, unique=True))
    name: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    role: str = Field(default=UserRole.BUYER.value, sa_column=Column(String(32), nullable=False, default=UserRole.BUYER.value))
    created_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now))


# --------------------------------------------------------------------------------------------
# User --> Orders (1:many)
# subscription anchor --> spawned cycle orders (1:many through anchor_order_id)
class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    user_id: int = Field(sa_column=Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False))
    anchor_order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), index=True, nullable=True))

    status: str = Field(default=OrderStatus.PENDING.value, sa_column=Column(String(32), nullable=False, index=True))
    # bumped on every guarded write, see repository.save_order
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default=text("0")))

    shipping_address: Dict[str, Any] = Field(sa_column=Column(JSONType, nullable=False))
    payment_method: str = Field(sa_column=Column(String(16), nullable=False))
    payment_type: str = Field(sa_column=Column(String(32), nullable=False))

    # all amounts in minor units (cents)
    currency: str = Field(default="usd", sa_column=Column(String(8), nullable=False))
    items_price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    tax_price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    shipping_price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    total_price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))

    is_paid: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false")))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    is_delivered: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false")))
    delivered_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    payment_intent_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    payment_intent_status: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    payment_intent_client_secret: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True))
    payment_error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType, nullable=True))
    payment_result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType, nullable=True))

    tracking: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType, nullable=True))

    cancellation_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    cancelled_by: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    return_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    return_requested_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    refund_amount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    refunded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    admin_notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    # subscription block, unused (null / defaults) for one time orders
    is_subscription: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false")))
    subscription_type: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    subscription_name: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True))
    subscription_price: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    recurrence: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    billing_cycle: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default=text("1")))
    total_billing_cycles: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_billing_cycle: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default=text("1")))
    subscription_status: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True, index=True))
    next_billing_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    gateway_subscription_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    gateway_customer_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    gateway_price_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))

    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))

    items: List["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "OrderItem.id"})
    status_history: List["OrderStatusEvent"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "OrderStatusEvent.id"})
    payment_history: List["SubscriptionPayment"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "SubscriptionPayment.id"})

    __table_args__ = (
        # at most one spawned order per billing cycle of an anchor
        UniqueConstraint("anchor_order_id", "current_billing_cycle", name="uq_orders_anchor_cycle"),
        Index(
            "uq_orders_gateway_subscription_anchor",
            "gateway_subscription_id",
            unique=True,
            postgresql_where=text("anchor_order_id IS NULL AND gateway_subscription_id IS NOT NULL"),
            sqlite_where=text("anchor_order_id IS NULL AND gateway_subscription_id IS NOT NULL"),
        ),
    )


# line items are snapshots, products live in the catalog service
class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: str = Field(sa_column=Column(String(64), nullable=False))
    name: str = Field(sa_column=Column(String(255), nullable=False))
    image: Optional[str] = Field(default=None, sa_column=Column(String(1024), nullable=True))
    unit_price: int = Field(sa_column=Column(BigInteger, nullable=False))  # cents
    quantity: int = Field(sa_column=Column(Integer, nullable=False))

    order: Optional["Orders"] = Relationship(back_populates="items")


# append only, newest row holds the order's current status
class OrderStatusEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    status: str = Field(sa_column=Column(String(32), nullable=False))
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    actor: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))  # "user:12" | "gateway" | "billing_poll"
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    order: Optional["Orders"] = Relationship(back_populates="status_history")


# payment history of a subscription anchor, one row per billing cycle attempt
class SubscriptionPayment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    currency: str = Field(default="usd", sa_column=Column(String(8), nullable=False))
    status: str = Field(sa_column=Column(String(16), nullable=False))
    billing_cycle: int = Field(sa_column=Column(Integer, nullable=False))
    paid_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    gateway_invoice_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    gateway_payment_intent_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    failure_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column("metadata", JSONType, nullable=True))

    order: Optional["Orders"] = Relationship(back_populates="payment_history")

    __table_args__ = (
        UniqueConstraint("gateway_invoice_id", "status", name="uq_subpayment_invoice_status"),
        Index(
            "uq_subpayment_order_cycle_succeeded",
            "order_id", "billing_cycle",
            unique=True,
            postgresql_where=text("status = 'succeeded'"),
            sqlite_where=text("status = 'succeeded'"),
        ),
    )


class PaymentWebhookEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(sa_column=Column(String(64), nullable=False))
    provider_event_id: str = Field(sa_column=Column(String(128), nullable=False))
    event_type: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSONType, nullable=True))
    status: str = Field(default=PaymentEventStatus.RECEIVED.value, sa_column=Column(String(16), nullable=False))
    attempts: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default=text("1")))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )
