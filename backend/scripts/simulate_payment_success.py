"""
Force a sandbox transaction into settlement so the payment flow can be tested
without paying.

Usage:
    1. Create an order in the storefront
    2. Copy the order id (e.g. ORD-20251108-0001)
    3. python simulate_payment_success.py ORD-20251108-0001

Midtrans then sends the settlement notification to the configured webhook.
"""

import argparse
import os
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / '.env')

SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"


def simulate_settlement(order_id, server_key):
    """Call the sandbox b2b status endpoint with a settlement payload"""
    url = f"{SANDBOX_API_URL}/{order_id}/status/b2b"
    payload = {
        "transaction_status": "settlement",
        "status_code": "200",
        "fraud_status": "accept",
    }

    try:
        response = requests.post(
            url,
            json=payload,
            auth=(server_key, ""),
            headers={"Accept": "application/json"},
            timeout=15,
        )
        response.raise_for_status()
        result = response.json()
        print(f"✓ Success: {result.get('status_message', 'settlement requested')}")
        print(f"  Order ID: {order_id}")
        print(f"  Transaction Status: {result.get('transaction_status', '-')}")
        return result
    except requests.exceptions.HTTPError as e:
        print(f"✗ Error: {e}")
        if e.response.status_code == 404:
            print(f"  Transaction for {order_id} not found. Open the Snap payment page once first.")
        elif e.response.status_code == 401:
            print("  Unauthorized. Check MIDTRANS_SERVER_KEY (sandbox keys start with 'SB-Mid-server-').")
        else:
            print(f"  Response: {e.response.text}")
        return None
    except requests.exceptions.RequestException as e:
        print(f"✗ Request failed: {e}")
        return None


def main():
    parser = argparse.ArgumentParser(description="Simulate a successful Midtrans sandbox payment")
    parser.add_argument("order_id", help="Order ID, e.g. ORD-20251108-0001")
    parser.add_argument("--server-key", help="Midtrans server key (defaults to MIDTRANS_SERVER_KEY)")
    args = parser.parse_args()

    server_key = args.server_key or os.getenv("MIDTRANS_SERVER_KEY", "")
    if not server_key:
        print("✗ Error: MIDTRANS_SERVER_KEY not found in environment or .env")
        sys.exit(1)

    print("Simulating payment success...")
    print(f"  Order ID: {args.order_id}")
    print(f"  Server key: {server_key[:15]}...")

    if simulate_settlement(args.order_id, server_key) is None:
        sys.exit(1)


if __name__ == "__main__":
    main()
