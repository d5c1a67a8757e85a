#!/usr/bin/env python3
"""
Refund and cancellation flow script.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the orchestrator service.

Usage:
    python scripts/flow_refund_and_cancel.py --booking-id 1042
    python scripts/flow_refund_and_cancel.py --booking-id 1042 --partial
    python scripts/flow_refund_and_cancel.py --booking-id 1042 --no-refund

Flow:
    1. Ask to cancel (orchestrator says whether a refund is required)
    2. Read the refundable balance
    3. Refund (full or partial) and cancel, or cancel without refund
    4. Show any inconsistency flags left on the booking
"""

import argparse
import json
import os
import sys
from decimal import Decimal

import httpx

BASE_URL = os.environ.get("RENTFLOW_URL", "http://localhost:8000")


def api_request(method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make API request."""
    url = f"{BASE_URL}{endpoint}"
    response = httpx.request(method, url, json=data, timeout=20.0, follow_redirects=True)
    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None):
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    data = result["data"]
    if fields and isinstance(data, dict):
        data = {k: data.get(k) for k in fields if k in data}
    print(json.dumps(data, indent=2))
    return True


def main():
    parser = argparse.ArgumentParser(description="Refund and cancellation flow")
    parser.add_argument("--booking-id", required=True, help="Booking ID")
    parser.add_argument("--partial", action="store_true", help="Refund 50% instead of the full balance")
    parser.add_argument("--no-refund", action="store_true", help="Cancel without refunding")
    parser.add_argument("--reason", default="Customer requested cancellation", help="Refund reason")
    args = parser.parse_args()
    booking_id = args.booking_id

    # Step 1: Request cancellation
    print_step(1, "Request cancellation")
    transition = api_request("POST", f"/api/v1/bookings/{booking_id}/transitions", {
        "target_status": "Cancelled",
    })
    if not print_result(transition, ["outcome"]):
        sys.exit(1)
    if transition["data"]["outcome"] == "committed":
        print("\nBooking CANCELLED (nothing was paid)")
        return

    # Step 2: Refundable balance
    print_step(2, "Read refundable balance")
    suggested = api_request("GET", f"/api/v1/bookings/{booking_id}/refund")
    if not print_result(suggested):
        sys.exit(1)
    refundable = Decimal(str(suggested["data"]["refundable_amount"]))

    # Step 3: Refund and cancel
    if args.no_refund or refundable == 0:
        print_step(3, "Cancel without refund")
        result = api_request("POST", f"/api/v1/bookings/{booking_id}/cancel", {"reason": args.reason})
    else:
        amount = (refundable / 2).quantize(Decimal("0.01")) if args.partial else refundable
        print_step(3, f"Refund {amount} and cancel")
        result = api_request("POST", f"/api/v1/bookings/{booking_id}/refund", {
            "amount": str(amount),
            "reason": args.reason,
        })
    ok = print_result(result)

    # Step 4: Inconsistencies
    print_step(4, "Inconsistency flags")
    flags = api_request("GET", f"/api/v1/bookings/{booking_id}/inconsistencies")
    print_result(flags)
    if flags["status"] < 400 and flags["data"]:
        print("\nBooking needs operator reconciliation before any further action")
        sys.exit(2)
    if not ok:
        sys.exit(1)

    print("\n" + "="*60)
    print("REFUND & CANCEL FLOW COMPLETE")
    print("="*60)


if __name__ == "__main__":
    main()
