# backend/payment_reconciliation.py

"""
Payment Reconciliation - sole writer of Order.payment_status / order_status
for gateway events.

Flow per webhook notification:
1) Verify signature (only defense against forged notifications)
2) Load order by order_id
3) Map transaction_status / fraud_status to target statuses
4) Conditional update: the write only lands if the order is still in the
   state we read (compare-and-swap), so duplicate or concurrent deliveries
   for one order commute
5) After the acknowledgement, pending -> paid side effects record the edge
   in the `payment_events` ledger; whichever request inserted that entry
   sends the notifications

Terminal payment states do not move again, with one exception: a refund
may move `paid` to `cancelled`. Stale notifications (pending after
settlement, expire after paid) are acknowledged and ignored.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import logging

from pydantic import BaseModel

from midtrans_gateway import map_transaction_status, verify_signature
from models import MidtransNotification, PaymentStatus, TERMINAL_PAYMENT_STATUSES
from notification_service import NotificationService

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 3


class ReconciliationOutcome(str, Enum):
    APPLIED = "APPLIED"
    UNCHANGED = "UNCHANGED"
    IGNORED_STALE = "IGNORED_STALE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    MISCONFIGURED = "MISCONFIGURED"


# Outcomes the gateway should see as success (no retry wanted)
ACKNOWLEDGED_OUTCOMES = {
    ReconciliationOutcome.APPLIED,
    ReconciliationOutcome.UNCHANGED,
    ReconciliationOutcome.IGNORED_STALE,
}


class ReconciliationConflictError(Exception):
    """Order kept changing under us; the gateway should retry"""


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    order_id: str
    message: str
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
    previous_payment_status: Optional[str] = None
    previous_order_status: Optional[str] = None
    edge: Optional[str] = None
    notify_paid: bool = False

    @property
    def acknowledged(self) -> bool:
        return self.outcome in ACKNOWLEDGED_OUTCOMES


def can_transition(current: str, target: str, transaction_status: str) -> bool:
    """Whether a notification may move payment_status from current to target."""
    if current == target:
        return True
    if current == PaymentStatus.PENDING.value:
        return True
    if current == PaymentStatus.PAID.value and transaction_status == "refund":
        return True
    return current not in {s.value for s in TERMINAL_PAYMENT_STATUSES}


class PaymentReconciliationService:
    """Consumes Midtrans HTTP notifications for the `orders` collection."""

    def __init__(self, db, server_key: str, notifications: Optional[NotificationService] = None):
        self.db = db
        self.server_key = server_key
        self.notifications = notifications

    async def get_order(self, order_id: str) -> Optional[dict]:
        return await self.db.orders.find_one({"order_id": order_id}, {"_id": 0})

    async def reconcile(self, notification: MidtransNotification) -> ReconciliationResult:
        order_id = notification.order_id

        if not self.server_key:
            logger.error("MIDTRANS_SERVER_KEY not configured, cannot verify webhook")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.MISCONFIGURED,
                order_id=order_id,
                message="Server configuration error"
            )

        if not verify_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            notification.signature_key,
            self.server_key
        ):
            logger.warning(f"Rejected Midtrans notification with invalid signature for order '{order_id}'")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.INVALID_SIGNATURE,
                order_id=order_id,
                message="Invalid signature"
            )

        order = await self.get_order(order_id)
        if not order:
            logger.warning(f"Midtrans notification for unknown order '{order_id}'")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ORDER_NOT_FOUND,
                order_id=order_id,
                message="Order not found"
            )

        transaction_status = notification.transaction_status
        transition = map_transaction_status(transaction_status, notification.fraud_status)
        if not transition.recognized:
            logger.warning(
                f"Unrecognized transaction_status '{transaction_status}' for order {order_id}, treating as pending"
            )

        for _ in range(MAX_UPDATE_ATTEMPTS):
            current_payment = order.get("payment_status")
            current_order_status = order.get("order_status")
            target_payment = transition.payment_status.value
            target_order_status = (
                transition.order_status.value if transition.order_status else current_order_status
            )

            if current_payment == target_payment:
                logger.info(
                    f"Order {order_id} already {current_payment}, notification '{transaction_status}' is a no-op"
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.UNCHANGED,
                    order_id=order_id,
                    message="Notification processed successfully",
                    payment_status=current_payment,
                    order_status=current_order_status,
                    previous_payment_status=current_payment,
                    previous_order_status=current_order_status
                )

            if not can_transition(current_payment, target_payment, transaction_status):
                logger.info(
                    f"Ignoring stale '{transaction_status}' for order {order_id} in terminal state {current_payment}"
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.IGNORED_STALE,
                    order_id=order_id,
                    message="Notification ignored, order already settled",
                    payment_status=current_payment,
                    order_status=current_order_status,
                    previous_payment_status=current_payment,
                    previous_order_status=current_order_status
                )

            now = datetime.now(timezone.utc).isoformat()
            update: Dict[str, Any] = {
                "payment_status": target_payment,
                "order_status": target_order_status,
                "updated_at": now,
            }
            if notification.payment_type:
                update["payment_type"] = notification.payment_type
            if notification.transaction_id:
                update["transaction_id"] = notification.transaction_id
            if transition.cancel_reason:
                update["cancel_reason"] = transition.cancel_reason
                update["cancelled_at"] = now

            conditions: Dict[str, Any] = {
                "order_id": order_id,
                "payment_status": current_payment,
                "order_status": current_order_status,
            }
            if target_payment == PaymentStatus.PAID.value:
                # paid_at is stamped exactly once
                conditions["paid_at"] = None
                update["paid_at"] = now

            result = await self.db.orders.update_one(conditions, {"$set": update})
            if result.matched_count == 1:
                edge = f"{current_payment}->{target_payment}"
                notify_paid = target_payment == PaymentStatus.PAID.value
                logger.info(
                    f"Order {order_id}: payment {current_payment} -> {target_payment}, "
                    f"order {current_order_status} -> {target_order_status}"
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.APPLIED,
                    order_id=order_id,
                    message="Notification processed successfully",
                    payment_status=target_payment,
                    order_status=target_order_status,
                    previous_payment_status=current_payment,
                    previous_order_status=current_order_status,
                    edge=edge,
                    notify_paid=notify_paid
                )

            # Someone else moved the order between our read and write
            order = await self.get_order(order_id)
            if not order:
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.ORDER_NOT_FOUND,
                    order_id=order_id,
                    message="Order not found"
                )

        raise ReconciliationConflictError(f"Order {order_id} changed concurrently {MAX_UPDATE_ATTEMPTS} times")

    async def _record_event(self, order: dict, edge: str) -> bool:
        """
        Insert the (order_id, edge) ledger entry if absent.
        Returns True only for the request that inserted it.
        """
        result = await self.db.payment_events.update_one(
            {"order_id": order["order_id"], "edge": edge},
            {"$setOnInsert": {
                "order_id": order["order_id"],
                "edge": edge,
                "payment_status": order.get("payment_status"),
                "payment_type": order.get("payment_type"),
                "transaction_id": order.get("transaction_id"),
                "total": order.get("total"),
                "received_at": datetime.now(timezone.utc).isoformat(),
            }},
            upsert=True
        )
        return result.upserted_id is not None

    async def dispatch_side_effects(self, result: ReconciliationResult) -> None:
        """
        Fire pending -> paid notifications once per order. Runs after the
        gateway has been acknowledged; failures are logged and never propagate.

        The ledger entry decides which delivery notifies. If the ledger
        cannot be written the notifications are sent anyway: a duplicate is
        preferred to none.
        """
        if not result.notify_paid or self.notifications is None:
            return
        try:
            order = await self.get_order(result.order_id)
        except Exception as e:
            logger.error(f"Failed to load paid order {result.order_id}: {e}", exc_info=True)
            return
        if not order:
            return

        try:
            first_delivery = await self._record_event(order, result.edge)
        except Exception as e:
            logger.error(f"Payment ledger write failed for order {result.order_id}: {e}", exc_info=True)
            first_delivery = True
        if not first_delivery:
            logger.info(f"Paid notifications for order {result.order_id} already sent")
            return

        try:
            await self.notifications.notify_payment_confirmed(order)
        except Exception as e:
            logger.error(f"Failed to send notifications for paid order {result.order_id}: {e}", exc_info=True)
