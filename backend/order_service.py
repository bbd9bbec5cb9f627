# backend/order_service.py

"""
Checkout and order lifecycle outside the payment webhook.

Payment/order status changes coming from the gateway belong to
payment_reconciliation; this module only creates orders, cancels unpaid
ones, and records admin shipping info.
"""

from typing import List, Optional
from datetime import datetime, timezone
import asyncio
import logging

from cart import (
    Cart,
    CartService,
    EmptyCartError,
    InsufficientStockError,
    PriceChangedError,
    snapshot_line,
)
from midtrans_gateway import MidtransClient, MidtransError, build_snap_parameters
from models import (
    CheckoutRequest,
    MidtransNotification,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    STAFF_ROLES,
    ShippingInfo,
)
from notification_service import NotificationService
from payment_reconciliation import PaymentReconciliationService, ReconciliationResult
from shipping_weight import aggregate
from unit_conversion_engine import UnitConversionEngine, apply_precision

logger = logging.getLogger(__name__)


class OrderNotFoundError(Exception):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Pesanan '{order_id}' tidak ditemukan")


class OrderStateError(Exception):
    """Requested action is not allowed in the order's current state"""


async def generate_order_id(db, now: Optional[datetime] = None) -> str:
    """ORD-YYYYMMDD-NNNN, sequence restarts every day."""
    now = now or datetime.now(timezone.utc)
    day = now.strftime("%Y%m%d")
    counter = await db.counters.find_one_and_update(
        {"collection": f"orders-{day}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=True
    )
    seq = counter.get("seq", 1)
    return f"ORD-{day}-{str(seq).zfill(4)}"


class OrderService:
    def __init__(
        self,
        db,
        engine: UnitConversionEngine,
        carts: CartService,
        midtrans: Optional[MidtransClient] = None,
        notifications: Optional[NotificationService] = None,
        reconciliation: Optional[PaymentReconciliationService] = None
    ):
        self.db = db
        self.engine = engine
        self.carts = carts
        self.midtrans = midtrans
        self.notifications = notifications
        self.reconciliation = reconciliation

    async def create_order(self, user: dict, request: CheckoutRequest) -> dict:
        """
        Checkout the user's cart.

        Every line is re-priced from the live product in its own unit and its
        quantity re-checked against live stock; client-held price and stock
        are ignored. A price that moved since the item was added aborts the
        checkout after refreshing the cart.

        Raises:
            EmptyCartError, ProductNotFoundError, InsufficientStockError,
            PriceChangedError, ConversionError, MidtransError
        """
        cart = await self.carts.get_cart(user["id"])
        if not cart.items:
            raise EmptyCartError()

        items: List[OrderItem] = []
        attributes_by_product_id = {}
        fresh_lines = []
        for line in cart.items:
            product = await self.carts.get_product(line.product_id)
            fresh = await snapshot_line(self.engine, product, line.quantity, line.unit)
            if fresh.quantity > fresh.stock:
                raise InsufficientStockError(fresh.product_id, fresh.unit, fresh.quantity, fresh.stock)
            fresh_lines.append(fresh)
            attributes_by_product_id[fresh.product_id] = product.get("attributes") or {}

        changed = [(old, new) for old, new in zip(cart.items, fresh_lines) if old.price != new.price]
        if changed:
            # Store the new prices so the customer can review and retry
            await self.carts.save(user["id"], Cart(items=tuple(fresh_lines)))
            old, new = changed[0]
            logger.info(f"Checkout for {user['id']} stopped: {old.product_id} per {old.unit} {old.price} -> {new.price}")
            raise PriceChangedError(old.product_id, old.price, new.price)

        for fresh in fresh_lines:
            line_total, _ = apply_precision(fresh.price * fresh.quantity, 0)
            items.append(OrderItem(
                product_id=fresh.product_id,
                name=fresh.name,
                slug=fresh.slug,
                image=fresh.image,
                category=fresh.category,
                unit=fresh.unit,
                price=fresh.price,
                quantity=fresh.quantity,
                line_total=line_total
            ))

        subtotal = sum(item.line_total for item in items)
        # Rupiah has no minor unit; total must equal the Snap gross_amount
        shipping_cost, _ = apply_precision(request.shipping_cost, 0)
        order = Order(
            order_id=await generate_order_id(self.db),
            user_id=user["id"],
            items=items,
            shipping_address=request.shipping_address,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            total=subtotal + shipping_cost,
            total_weight_grams=aggregate(fresh_lines, attributes_by_product_id, self.engine.tables),
            courier=request.courier,
            payment_method=request.payment_method
        )
        order_doc = order.model_dump(mode="json")

        if self.midtrans is not None:
            snap = await asyncio.to_thread(
                self.midtrans.create_snap_transaction,
                build_snap_parameters(order_doc, user)
            )
            order_doc["snap_token"] = snap["token"]
            order_doc["snap_redirect_url"] = snap["redirect_url"]

        await self.db.orders.insert_one(dict(order_doc))
        await self.carts.clear(user["id"])
        logger.info(f"Order {order.order_id} created for user {user['id']}: total {order.total}")
        return order_doc

    async def list_orders(self, user: dict) -> List[dict]:
        return await self.db.orders.find({"user_id": user["id"]}, {"_id": 0}).sort("created_at", -1).to_list(1000)

    async def get_order(self, user: dict, order_id: str) -> dict:
        query = {"order_id": order_id}
        if user.get("role") not in STAFF_ROLES:
            query["user_id"] = user["id"]
        order = await self.db.orders.find_one(query, {"_id": 0})
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    async def cancel_order(self, user: dict, order_id: str, reason: str) -> dict:
        """Customer cancellation; refused once the order is paid."""
        order = await self.get_order(user, order_id)
        if order["payment_status"] == PaymentStatus.PAID.value:
            raise OrderStateError("Pesanan yang sudah dibayar tidak dapat dibatalkan")
        if order["order_status"] == OrderStatus.CANCELLED.value:
            raise OrderStateError("Pesanan sudah dibatalkan")

        now = datetime.now(timezone.utc).isoformat()
        result = await self.db.orders.update_one(
            {
                "order_id": order_id,
                "payment_status": {"$ne": PaymentStatus.PAID.value},
                "order_status": {"$ne": OrderStatus.CANCELLED.value},
            },
            {"$set": {
                "payment_status": PaymentStatus.CANCELLED.value,
                "order_status": OrderStatus.CANCELLED.value,
                "cancel_reason": reason,
                "cancelled_at": now,
                "updated_at": now,
            }}
        )
        if result.matched_count == 0:
            # Webhook got there first
            raise OrderStateError("Status pesanan berubah, silakan muat ulang")

        if self.midtrans is not None and order.get("snap_token"):
            try:
                await asyncio.to_thread(self.midtrans.cancel_transaction, order_id)
            except MidtransError as e:
                logger.warning(f"Midtrans cancel for {order_id} failed, order cancelled locally: {e.message}")

        logger.info(f"Order {order_id} cancelled by user {user['id']}: {reason}")
        return await self.get_order(user, order_id)

    async def mark_shipped(self, order_id: str, courier: str, tracking_number: str) -> dict:
        """Admin action, only valid from processing."""
        shipping_info = ShippingInfo(courier=courier, tracking_number=tracking_number)
        result = await self.db.orders.update_one(
            {"order_id": order_id, "order_status": OrderStatus.PROCESSING.value},
            {"$set": {
                "order_status": OrderStatus.SHIPPED.value,
                "shipping_info": shipping_info.model_dump(),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }}
        )
        order = await self.db.orders.find_one({"order_id": order_id}, {"_id": 0})
        if not order:
            raise OrderNotFoundError(order_id)
        if result.matched_count == 0:
            raise OrderStateError(f"Pesanan berstatus '{order['order_status']}' tidak dapat dikirim")

        logger.info(f"Order {order_id} shipped via {courier} ({tracking_number})")
        if self.notifications is not None:
            await self.notifications.notify_order_shipped(order)
        return order

    async def sync_payment_status(self, order_id: str) -> ReconciliationResult:
        """
        Pull the transaction status from the Core API and feed it through
        reconciliation, for when a webhook never arrived. The Core API
        response is signed the same way a notification is.
        """
        if self.midtrans is None or self.reconciliation is None:
            raise OrderStateError("Midtrans is not configured")
        status = await asyncio.to_thread(self.midtrans.get_transaction_status, order_id)
        result = await self.reconciliation.reconcile(MidtransNotification(**status))
        await self.reconciliation.dispatch_side_effects(result)
        return result
