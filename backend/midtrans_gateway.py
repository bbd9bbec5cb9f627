# backend/midtrans_gateway.py

"""
Midtrans payment gateway integration.

- Snap transaction creation (payment page token)
- Core API status / cancel calls
- Webhook signature verification
- transaction_status / fraud_status -> (payment_status, order_status) table

Documentation: https://docs.midtrans.com/
"""

from typing import Optional, List, Dict, Any
import hashlib
import hmac
import logging

import midtransclient
import requests
from midtransclient.error_midtrans import MidtransAPIError
from pydantic import BaseModel

from models import PaymentStatus, OrderStatus

logger = logging.getLogger(__name__)


ENABLED_PAYMENTS = [
    "credit_card",
    "gopay",
    "shopeepay",
    "other_qris",
    "bca_va",
    "bni_va",
    "bri_va",
    "permata_va",
    "other_va",
    "echannel",  # Mandiri Bill Payment
    "alfamart",
    "indomaret",
]

REFUND_CANCEL_REASON = "Pembayaran di-refund oleh Midtrans"


class MidtransError(Exception):
    """Gateway call failed"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ==================== SIGNATURE ====================

def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """hex(sha512(order_id + status_code + gross_amount + server_key))"""
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


def verify_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    signature_key: Optional[str],
    server_key: str
) -> bool:
    """Constant-time, byte-for-byte comparison. Missing signature never verifies."""
    if not signature_key or not server_key:
        return False
    expected = compute_signature(order_id, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected.encode("utf-8"), signature_key.encode("utf-8"))


# ==================== STATUS MAPPING ====================

class StatusTransition(BaseModel):
    """Target statuses for one notification. order_status None keeps the current one."""
    payment_status: PaymentStatus
    order_status: Optional[OrderStatus] = None
    recognized: bool = True
    cancel_reason: Optional[str] = None


def map_transaction_status(transaction_status: str, fraud_status: Optional[str] = None) -> StatusTransition:
    """
    Midtrans status reference:
    https://docs.midtrans.com/en/after-payment/get-status#transaction-status
    """
    if transaction_status == "capture":
        # Credit card capture - check fraud status
        if fraud_status == "accept":
            return StatusTransition(payment_status=PaymentStatus.PAID, order_status=OrderStatus.PROCESSING)
        if fraud_status == "challenge":
            # Wait for manual review
            return StatusTransition(payment_status=PaymentStatus.PENDING)
        return StatusTransition(payment_status=PaymentStatus.FAILED, order_status=OrderStatus.CANCELLED)

    if transaction_status == "settlement":
        return StatusTransition(payment_status=PaymentStatus.PAID, order_status=OrderStatus.PROCESSING)

    if transaction_status == "pending":
        return StatusTransition(payment_status=PaymentStatus.PENDING)

    if transaction_status == "deny":
        return StatusTransition(payment_status=PaymentStatus.FAILED, order_status=OrderStatus.CANCELLED)

    if transaction_status in ("cancel", "expire"):
        return StatusTransition(payment_status=PaymentStatus.CANCELLED, order_status=OrderStatus.CANCELLED)

    if transaction_status == "refund":
        return StatusTransition(
            payment_status=PaymentStatus.CANCELLED,
            order_status=OrderStatus.CANCELLED,
            cancel_reason=REFUND_CANCEL_REASON
        )

    return StatusTransition(payment_status=PaymentStatus.PENDING, recognized=False)


# ==================== API CLIENT ====================

def build_snap_parameters(order: Dict[str, Any], customer: Dict[str, Any]) -> Dict[str, Any]:
    """
    Snap request body for an order document.

    Lines may carry fractional quantities (0.5 sak), which Midtrans rejects,
    so every line is sent as quantity 1 priced at its rupiah line total.
    gross_amount is the sum of the item lines.
    """
    item_details: List[Dict[str, Any]] = []
    for index, item in enumerate(order.get("items", [])):
        item_details.append({
            "id": f"{item['product_id']}-{index}",
            "price": int(round(item["line_total"])),
            "quantity": 1,
            "name": f"{item['quantity']:g} {item['unit']} {item['name']}"[:50],
        })
    shipping_cost = int(round(order.get("shipping_cost", 0)))
    if shipping_cost:
        item_details.append({
            "id": "SHIPPING",
            "price": shipping_cost,
            "quantity": 1,
            "name": f"Ongkos Kirim {order.get('courier') or ''}".strip()[:50],
        })

    address = order.get("shipping_address", {})
    return {
        "transaction_details": {
            "order_id": order["order_id"],
            "gross_amount": sum(i["price"] * i["quantity"] for i in item_details),
        },
        "customer_details": {
            "first_name": customer.get("name", ""),
            "email": customer.get("email", ""),
            "phone": customer.get("phone", "") or address.get("phone_number", ""),
        },
        "item_details": item_details,
        "shipping_address": {
            "first_name": address.get("recipient_name", ""),
            "phone": address.get("phone_number", ""),
            "address": address.get("full_address", ""),
            "city": address.get("city", ""),
            "postal_code": address.get("postal_code", ""),
            "country_code": "IDN",
        },
        "enabled_payments": ENABLED_PAYMENTS,
        "credit_card": {"secure": True},
        "expiry": {"unit": "hours", "duration": 24},
    }


class MidtransClient:
    """
    Snap and Core API calls through the official SDK. The SDK is synchronous;
    call from async code via asyncio.to_thread.
    """

    def __init__(
        self,
        server_key: str,
        client_key: str = "",
        is_production: bool = False,
        snap: Optional[midtransclient.Snap] = None,
        core: Optional[midtransclient.CoreApi] = None
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.snap = snap or midtransclient.Snap(
            is_production=is_production, server_key=server_key, client_key=client_key
        )
        self.core = core or midtransclient.CoreApi(
            is_production=is_production, server_key=server_key, client_key=client_key
        )

    def _call(self, action: str, func, *args) -> Dict[str, Any]:
        if not self.server_key:
            raise MidtransError("MIDTRANS_SERVER_KEY is not configured")
        try:
            return func(*args)
        except MidtransAPIError as e:
            logger.error(f"Midtrans {action} failed with HTTP {e.http_status_code}: {e.message}")
            raise MidtransError(f"Midtrans {action} failed: {e.message}", status_code=e.http_status_code)
        except requests.exceptions.RequestException as e:
            logger.error(f"Midtrans {action} failed: {e}")
            raise MidtransError(f"Midtrans {action} failed: {e}")

    def create_snap_transaction(self, parameters: Dict[str, Any]) -> Dict[str, str]:
        """Returns {"token", "redirect_url"} for the Snap payment page."""
        data = self._call("snap transaction", self.snap.create_transaction, parameters)
        if "token" not in data:
            raise MidtransError(f"Snap response without token: {data}")
        return {"token": data["token"], "redirect_url": data.get("redirect_url", "")}

    def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        return self._call("status", self.core.transactions.status, order_id)

    def cancel_transaction(self, order_id: str) -> Dict[str, Any]:
        return self._call("cancel", self.core.transactions.cancel, order_id)
