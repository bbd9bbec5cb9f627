# backend/models.py

from enum import Enum
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import uuid

from pydantic import BaseModel, Field, ConfigDict


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==================== STATUSES ====================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"


TERMINAL_PAYMENT_STATUSES = {
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
    PaymentStatus.CANCELLED,
}

# Back-office roles: see every order, receive paid-order notifications
STAFF_ROLES = ["admin", "staff"]


class NotificationType(str, Enum):
    NEW_PAID_ORDER = "new_paid_order"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_SHIPPED = "order_shipped"
    ORDER_CANCELLED = "order_cancelled"


# ==================== CART ====================

class CartItem(BaseModel):
    """One cart line. price and stock are expressed in `unit`."""
    model_config = ConfigDict(extra="ignore", frozen=True)
    product_id: str
    name: str
    slug: str = ""
    image: str = ""
    category: str
    unit: str
    price: float = Field(ge=0)
    quantity: float = Field(gt=0)
    stock: float = Field(ge=0)


class CartItemInput(BaseModel):
    product_id: str
    quantity: float = Field(gt=0)
    unit: str


class SetQuantityRequest(BaseModel):
    quantity: float


# ==================== ORDERS ====================

class ShippingAddress(BaseModel):
    recipient_name: str
    phone_number: str
    full_address: str
    district: str
    city: str
    province: str
    postal_code: str
    notes: Optional[str] = None


class OrderItem(BaseModel):
    """Frozen copy of the product at purchase time"""
    product_id: str
    name: str
    slug: str = ""
    image: str = ""
    category: str
    unit: str
    price: float
    quantity: float
    line_total: float


class ShippingInfo(BaseModel):
    courier: str
    tracking_number: str
    shipped_date: str = Field(default_factory=utc_now_iso)


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    subtotal: float
    shipping_cost: float
    total: float
    total_weight_grams: int = 0
    courier: Optional[str] = None
    payment_method: str = "midtrans"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.AWAITING_PAYMENT
    payment_type: Optional[str] = None
    paid_at: Optional[str] = None
    snap_token: Optional[str] = None
    snap_redirect_url: Optional[str] = None
    transaction_id: Optional[str] = None
    shipping_info: Optional[ShippingInfo] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddress
    shipping_cost: float = Field(ge=0)
    courier: Optional[str] = None
    payment_method: str = "midtrans"


class CancelOrderRequest(BaseModel):
    reason: str = Field(min_length=1)


class ShipOrderRequest(BaseModel):
    courier: str
    tracking_number: str


# ==================== NOTIFICATIONS ====================

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    type: NotificationType
    title: str
    message: str
    click_action: str
    icon: str
    color: str
    is_read: bool = False
    data: Dict[str, Any] = {}
    created_at: str = Field(default_factory=utc_now_iso)


# ==================== GATEWAY ====================

class MidtransNotification(BaseModel):
    """
    Webhook body posted by Midtrans. Everything is optional so a malformed
    body fails the signature check instead of request validation.
    """
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)
    order_id: str = ""
    status_code: str = ""
    gross_amount: str = ""
    signature_key: str = ""
    transaction_status: str = ""
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    transaction_id: Optional[str] = None


# ==================== UNITS & SHIPPING REQUESTS ====================

class ConvertRequest(BaseModel):
    category: str
    quantity: float
    from_unit: str
    to_unit: str


class QuoteRequest(BaseModel):
    product_id: str
    quantity: float
    unit: str


class WeightRequest(BaseModel):
    items: List[CartItem]
    attributes_by_product_id: Dict[str, Dict[str, Any]] = {}


class ShippingCostRequest(BaseModel):
    destination: str
    courier: Optional[str] = None
    is_international: bool = False
    origin: Optional[str] = None
