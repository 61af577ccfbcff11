#!/usr/bin/env python3
"""Register a tenant and client if needed, then issue a portal magic link.

Usage:
    # Against the in-memory store (state persisted under SHARED_FS_ROOT):
    USE_MEMORY_STORE=true PERSIST_MEMORY_STATE=true ALLOW_REDIS_FALLBACK_DEV=true \\
        python scripts/issue_portal_link.py --tenant acme --client c-42 --name "Jo Smith" \\
        --email jo@example.com --quote q-1001

    # Against PostgreSQL, emailing the link to the client:
    DATABASE_URL=postgresql://... python scripts/issue_portal_link.py \\
        --tenant acme --client c-42 --send

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: use the in-memory store instead of PostgreSQL
    CUSTOMER_PORTAL_URL: base URL the printed link points at
"""
from __future__ import annotations

import argparse
import asyncio
import sys


async def issue_link(args: argparse.Namespace) -> dict:
    """Issue (or reuse) a link and return a printable summary."""
    # Import here to avoid loading config before env vars are set
    from portal_access.service.errors import ServiceError
    from portal_access.service.runtime import get_runtime

    runtime = get_runtime()
    admin = runtime.admin
    try:
        if args.dry_run:
            print(
                f"[DRY RUN] Would issue a {args.purpose} link for client {args.client} "
                f"in tenant {args.tenant}"
            )
            return {"status": "dry_run"}

        admin.register_tenant(args.tenant, company_name=args.company)
        if args.name:
            admin.upsert_client(
                args.tenant, args.client, args.name, email=args.email, phone=args.phone
            )
        outcome = await admin.issue_link(
            args.tenant,
            args.client,
            purpose=args.purpose,
            quote_id=args.quote,
            email=args.email,
            phone=args.phone,
            expiry_days=args.days,
            send=args.send,
            actor_id="cli",
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return {"status": "error", "error": exc.message}
    finally:
        await runtime.shutdown()

    link = outcome.record
    print(f"{outcome.status.value.capitalize()} link {link.id}")
    print(f"  url:     {outcome.url}")
    print(f"  expires: {link.expires_at.isoformat()}")
    return {
        "status": outcome.status.value,
        "link_id": link.id,
        "url": outcome.url,
        "expires_at": link.expires_at.isoformat(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Issue a customer portal magic link",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", required=True, help="Tenant (contractor) id")
    parser.add_argument("--client", required=True, help="Client id")
    parser.add_argument("--name", help="Client display name; creates or updates the client")
    parser.add_argument("--company", help="Company name used when registering the tenant")
    parser.add_argument("--email", help="Delivery email address")
    parser.add_argument("--phone", help="Delivery phone number")
    parser.add_argument("--quote", help="Quote the link is scoped to")
    parser.add_argument(
        "--purpose",
        default="portal_access",
        choices=["portal_access", "quote_view", "quote_approval", "payment", "job_status"],
    )
    parser.add_argument("--days", type=int, help="Link lifetime in days (tenant default if omitted)")
    parser.add_argument("--send", action="store_true", help="Deliver the link to the client")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()
    result = asyncio.run(issue_link(args))
    if result["status"] == "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
