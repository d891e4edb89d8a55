from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import AliasChoices, BaseModel, Field

# field presence and business rules are checked by the order services so that
# a malformed order surfaces as one VALIDATION_ERROR listing every problem


class OrderItemIn(BaseModel):
    product_id: Optional[str] = Field(None, validation_alias=AliasChoices("product_id", "productId", "product"))
    name: Optional[str] = None
    image: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[int] = Field(None, validation_alias=AliasChoices("quantity", "qty"))


class ShippingAddressIn(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = Field(None, validation_alias=AliasChoices("postal_code", "postalCode"))
    country: Optional[str] = None


class CardDetailsIn(BaseModel):
    number: Optional[str] = Field(None, validation_alias=AliasChoices("number", "card_number", "cardNumber"))
    exp_month: Optional[int] = Field(None, validation_alias=AliasChoices("exp_month", "expMonth", "expiryMonth"))
    exp_year: Optional[int] = Field(None, validation_alias=AliasChoices("exp_year", "expYear", "expiryYear"))
    cvc: Optional[str] = Field(None, validation_alias=AliasChoices("cvc", "cvv"))
    holder_name: Optional[str] = Field(None, validation_alias=AliasChoices("holder_name", "holderName", "cardholderName"))


class SubscriptionIn(BaseModel):
    subscription_type: Optional[str] = Field("custom", validation_alias=AliasChoices("subscription_type", "subscriptionType", "type"))
    name: Optional[str] = None
    recurrence: Optional[str] = None
    billing_cycle: int = Field(1, validation_alias=AliasChoices("billing_cycle", "billingCycle"))
    total_billing_cycles: Optional[int] = Field(None, validation_alias=AliasChoices("total_billing_cycles", "totalBillingCycles"))


class OrderCreateIn(BaseModel):
    order_items: List[OrderItemIn] = Field(default_factory=list, validation_alias=AliasChoices("order_items", "orderItems", "items"))
    shipping_address: Optional[ShippingAddressIn] = Field(None, validation_alias=AliasChoices("shipping_address", "shippingAddress"))
    payment_method: Optional[str] = Field(None, validation_alias=AliasChoices("payment_method", "paymentMethod"))
    items_price: Optional[Decimal] = Field(None, validation_alias=AliasChoices("items_price", "itemsPrice"))
    tax_price: Decimal = Field(Decimal("0"), validation_alias=AliasChoices("tax_price", "taxPrice"))
    shipping_price: Decimal = Field(Decimal("0"), validation_alias=AliasChoices("shipping_price", "shippingPrice"))
    total_price: Optional[Decimal] = Field(None, validation_alias=AliasChoices("total_price", "totalPrice"))
    card_details: Optional[CardDetailsIn] = Field(None, validation_alias=AliasChoices("card_details", "cardDetails"))
    payment_method_id: Optional[str] = Field(None, validation_alias=AliasChoices("payment_method_id", "paymentMethodId"))
    is_subscription: bool = Field(False, validation_alias=AliasChoices("is_subscription", "isSubscription"))
    subscription: Optional[SubscriptionIn] = None
    notes: Optional[str] = None


class StatusUpdateIn(BaseModel):
    status: str
    note: Optional[str] = None


class TrackingUpdateIn(BaseModel):
    courier: Optional[str] = None
    tracking_number: Optional[str] = Field(None, validation_alias=AliasChoices("tracking_number", "trackingNumber"))
    estimated_delivery: Optional[datetime] = Field(None, validation_alias=AliasChoices("estimated_delivery", "estimatedDelivery"))
    tracking_url: Optional[str] = Field(None, validation_alias=AliasChoices("tracking_url", "trackingUrl"))
    current_location: Optional[str] = Field(None, validation_alias=AliasChoices("current_location", "currentLocation"))
    notes: Optional[str] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class RefundIn(BaseModel):
    refund_amount: Optional[Decimal] = Field(None, validation_alias=AliasChoices("refund_amount", "refundAmount"))
    note: Optional[str] = None


class ConfirmPaymentIn(BaseModel):
    payment_intent_id: str = Field(..., validation_alias=AliasChoices("payment_intent_id", "paymentIntentId"))


class ConfirmCodIn(BaseModel):
    collected_amount: Optional[Decimal] = Field(None, validation_alias=AliasChoices("collected_amount", "collectedAmount"))
    note: Optional[str] = None
