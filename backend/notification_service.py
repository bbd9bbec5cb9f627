# backend/notification_service.py

"""
In-app notifications and best-effort e-mail for order events.
"""

from typing import Dict, List, Optional, Any
import asyncio
import logging

import resend

from models import Notification, NotificationType, STAFF_ROLES

logger = logging.getLogger(__name__)


def format_rupiah(amount: float) -> str:
    """150000 -> 'Rp150.000'"""
    return "Rp" + f"{int(round(amount)):,}".replace(",", ".")


class NotificationService:
    """Writes to the `notifications` collection; e-mail is optional."""

    def __init__(self, db, resend_api_key: Optional[str] = None, sender_email: str = "onboarding@resend.dev"):
        self.db = db
        self.resend_api_key = resend_api_key
        self.sender_email = sender_email
        if resend_api_key:
            resend.api_key = resend_api_key

    async def create_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        click_action: str,
        icon: str,
        color: str,
        data: Optional[Dict[str, Any]] = None
    ) -> dict:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            click_action=click_action,
            icon=icon,
            color=color,
            data=data or {}
        ).model_dump(mode="json")
        await self.db.notifications.insert_one(dict(notification))
        return notification

    async def get_staff_user_ids(self) -> List[str]:
        staff = await self.db.users.find(
            {"role": {"$in": STAFF_ROLES}, "is_active": True},
            {"_id": 0, "id": 1}
        ).to_list(1000)
        return [user["id"] for user in staff]

    async def notify_payment_confirmed(self, order: dict) -> None:
        """
        Customer gets order_confirmed, every active admin/staff gets
        new_paid_order, and the customer is e-mailed when Resend is set up.
        Each channel fails independently.
        """
        order_id = order["order_id"]

        try:
            await self.create_notification(
                user_id=order["user_id"],
                notification_type=NotificationType.ORDER_CONFIRMED,
                title="Pesanan Dikonfirmasi",
                message=f"Pesanan #{order_id} sedang diproses. Estimasi pengiriman 1-2 hari kerja",
                click_action=f"/orders/{order_id}",
                icon="package",
                color="blue",
                data={"order_id": order_id}
            )
        except Exception as e:
            logger.error(f"Failed to create customer notification for order {order_id}: {e}", exc_info=True)

        try:
            staff_ids = await self.get_staff_user_ids()
            if staff_ids:
                message = (
                    f"Pesanan baru #{order_id} telah dibayar sebesar "
                    f"{format_rupiah(order.get('total', 0))}. Segera proses!"
                )
                notifications = [
                    Notification(
                        user_id=staff_id,
                        type=NotificationType.NEW_PAID_ORDER,
                        title="Pesanan Baru Masuk",
                        message=message,
                        click_action=f"/admin/orders?orderId={order_id}",
                        icon="shopping-cart",
                        color="blue",
                        data={"order_id": order_id}
                    ).model_dump(mode="json")
                    for staff_id in staff_ids
                ]
                await self.db.notifications.insert_many(notifications)
            logger.info(f"Sent paid-order notifications for {order_id} to {len(staff_ids)} staff user(s)")
        except Exception as e:
            logger.error(f"Failed to create staff notifications for order {order_id}: {e}", exc_info=True)

        customer = await self._find_customer(order["user_id"])
        if customer and customer.get("email"):
            await self.send_email_notification(
                [customer["email"]],
                f"Pembayaran pesanan #{order_id} diterima",
                f"<p>Terima kasih, pembayaran sebesar <b>{format_rupiah(order.get('total', 0))}</b> "
                f"untuk pesanan <b>#{order_id}</b> sudah kami terima. Pesanan Anda sedang diproses.</p>"
            )

    async def notify_order_shipped(self, order: dict) -> None:
        shipping_info = order.get("shipping_info") or {}
        try:
            await self.create_notification(
                user_id=order["user_id"],
                notification_type=NotificationType.ORDER_SHIPPED,
                title="Pesanan Dikirim",
                message=(
                    f"Pesanan #{order['order_id']} dikirim via {shipping_info.get('courier', '-')}. "
                    f"No. resi: {shipping_info.get('tracking_number', '-')}"
                ),
                click_action=f"/orders/{order['order_id']}",
                icon="truck",
                color="purple",
                data={"order_id": order["order_id"]}
            )
        except Exception as e:
            logger.error(f"Failed to create shipped notification for order {order['order_id']}: {e}", exc_info=True)

    async def send_email_notification(self, to_emails: List[str], subject: str, html_content: str):
        """Send email notification using Resend"""
        if not self.resend_api_key:
            logger.warning("RESEND_API_KEY not configured, skipping email")
            return None

        try:
            params = {
                "from": self.sender_email,
                "to": to_emails,
                "subject": subject,
                "html": html_content
            }
            result = await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Email sent to {to_emails}: {subject}")
            return result
        except Exception as e:
            logger.error(f"Failed to send email to {to_emails}: {e}", exc_info=True)
            return None

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> List[dict]:
        query: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            query["is_read"] = False
        return await self.db.notifications.find(query, {"_id": 0}).sort("created_at", -1).to_list(100)

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        result = await self.db.notifications.update_one(
            {"id": notification_id, "user_id": user_id},
            {"$set": {"is_read": True}}
        )
        return result.matched_count > 0

    async def _find_customer(self, user_id: str) -> Optional[dict]:
        try:
            return await self.db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        except Exception as e:
            logger.error(f"Failed to load customer {user_id}: {e}", exc_info=True)
            return None
