#!/usr/bin/env python3
"""Onboard a hotel from the command line.

Usage:
    # Against the configured database:
    DATABASE_URL=postgresql://... python scripts/create_hotel.py \
        --name "Sea View" --city Goa --phone 9876543210 --pin 59273841

    # Generate a random PIN and preview without writing:
    python scripts/create_hotel.py --name "Sea View" --city Goa --phone 9876543210 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    APP_URL: Base URL used to build the printed menu and dashboard links
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_hotel(args: argparse.Namespace) -> dict:
    """Create the tenant and return what the operator needs to hand over."""
    # Import here to avoid loading config before env vars are set
    from tablecode.service.credentials import CredentialStore
    from tablecode.service.runtime import get_runtime

    runtime = get_runtime()
    pin = args.pin or CredentialStore.generate_pin()

    if args.dry_run:
        print(f"[DRY RUN] Would create hotel {args.name!r} in {args.city}")
        return {"status": "dry_run"}

    created = await runtime.tenants.create_tenant(
        name=args.name,
        city=args.city,
        phone=args.phone,
        pin=pin,
        email=args.email,
        plan=args.plan,
    )
    await runtime.close()
    return {
        "status": "created",
        "tenant_id": created.tenant.id,
        "code": created.tenant.code,
        "pin": created.pin,
        "menu_url": created.menu_url,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Onboard a hotel into TableCode",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Hotel display name")
    parser.add_argument("--city", required=True, help="City")
    parser.add_argument("--phone", required=True, help="Contact phone, 10-15 characters")
    parser.add_argument("--pin", help="8-digit owner PIN (generated when omitted)")
    parser.add_argument("--email", help="Owner email for forgot-PIN recovery")
    parser.add_argument("--plan", default="STARTER", choices=["STARTER", "PRO"])
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(create_hotel(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nHotel created successfully!")
        print(f"  Code: {result['code']}")
        print(f"  PIN: {result['pin']}  (shown once, hand it to the owner)")
        print(f"  Menu: {result['menu_url']}")
        print(f"  Tenant ID: {result['tenant_id']}")


if __name__ == "__main__":
    main()
