#!/usr/bin/env python3
"""
Hold-and-pay flow script against a running API.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Tokens are minted locally with the shared JWT secret, standing in for
the identity service.

Usage:
    python scripts/flow_hold_and_pay.py --unit-id <UUID> --tenant-id <UUID> --admin-id <UUID>
    python scripts/flow_hold_and_pay.py --unit-id <UUID> --tenant-id <UUID> --admin-id <UUID> --amount 150000

Flow:
    1. Check unit availability
    2. Request booking (places the hold)
    3. Record payment as admin (manual gateway)
    4. Fetch the booking
    5. Check unit availability again
"""

import argparse
import json
import sys

import httpx

from hostelhub.core.security import create_access_token

BASE_URL = "http://localhost:8000"


def api_request(token: str | None, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make API request, authenticated when a token is given."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    url = f"{BASE_URL}{endpoint}"

    if method == "GET":
        response = httpx.get(url, headers=headers, timeout=10.0, follow_redirects=True)
    elif method == "POST":
        response = httpx.post(url, headers=headers, json=data or {}, timeout=10.0, follow_redirects=True)
    else:
        raise ValueError(f"Unknown method: {method}")

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
    if fields:
        filtered = {k: result["data"].get(k) for k in fields if k in result["data"]}
        print(json.dumps(filtered, indent=2))
    else:
        print(json.dumps(result["data"], indent=2))
    return True


def main():
    parser = argparse.ArgumentParser(description="Hold a bed and pay for it")
    parser.add_argument("--unit-id", required=True, help="Unit UUID")
    parser.add_argument("--tenant-id", required=True, help="Student user UUID")
    parser.add_argument("--admin-id", required=True, help="Admin user UUID")
    parser.add_argument("--semester", default="first", help="Semester name")
    parser.add_argument("--academic-year", default="2026/2027", help="Academic year (YYYY/YYYY)")
    parser.add_argument("--plan", default="full", choices=["full", "deposit"], help="Payment plan")
    parser.add_argument("--amount", type=int, help="Amount to record (defaults to the amount due)")
    args = parser.parse_args()

    tenant_token = create_access_token(args.tenant_id)
    admin_token = create_access_token(args.admin_id)

    # Step 1: Availability
    print_step(1, "Check unit availability")
    availability = api_request(None, "GET", f"/api/v1/units/{args.unit_id}/availability")
    if not print_result(availability):
        sys.exit(1)

    # Step 2: Request booking
    print_step(2, "Request booking")
    booking_result = api_request(tenant_token, "POST", "/api/v1/bookings", {
        "unit_id": args.unit_id,
        "semester": args.semester,
        "academic_year": args.academic_year,
        "payment_plan": args.plan,
    })
    if booking_result["status"] >= 400:
        print_result(booking_result)
        sys.exit(1)

    booking = booking_result["data"]["booking"]
    print(f"Status: {booking_result['status']} (created={booking_result['data']['created']})")
    print(json.dumps(
        {k: booking.get(k) for k in ["booking_number", "status", "amount_due", "hold_expires_at"]},
        indent=2,
    ))
    if booking_result["data"].get("checkout"):
        print(f"\nCheckout URL: {booking_result['data']['checkout'].get('checkout_url')}")

    # Step 3: Record payment
    print_step(3, "Record payment as admin")
    amount = args.amount if args.amount is not None else booking["amount_due"]
    payment_result = api_request(admin_token, "POST", "/api/v1/payments/manual", {
        "booking_id": booking["id"],
        "reference": f"receipt-{booking['booking_number']}",
        "amount": amount,
    })
    if not print_result(payment_result):
        sys.exit(1)

    # Step 4: Booking
    print_step(4, "Fetch booking")
    final = api_request(tenant_token, "GET", f"/api/v1/bookings/{booking['id']}")
    if not print_result(final, ["booking_number", "status", "payment_status", "amount_paid", "flag"]):
        sys.exit(1)

    # Step 5: Availability again
    print_step(5, "Check unit availability")
    availability = api_request(None, "GET", f"/api/v1/units/{args.unit_id}/availability")
    print_result(availability)

    print("\n" + "="*60)
    print(f"FLOW COMPLETE: {booking['booking_number']} is {final['data'].get('status')}")
    print("="*60)


if __name__ == "__main__":
    main()
