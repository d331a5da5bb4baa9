#!/usr/bin/env python3
"""CLI script to provision a new tenant with its administrator.

Usage:
    python scripts/provision_tenant.py --slug acme --name "Acme" --admin-email ops@acme.com
    python scripts/provision_tenant.py --generate-key

The administrator is the fallback owner for synced deals whose CRM owner has
no matching user. Connects directly to the database using DATABASE_URL from
environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.revsignal
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def provision(slug: str, name: str, admin_email: str) -> None:
    """Insert the tenant and its admin user in one transaction."""
    from src.revsignal.core.database import close_db, get_session, init_db
    from src.revsignal.models.tenant import Tenant, User

    await init_db()

    async for session in get_session():
        tenant = Tenant(slug=slug, name=name)
        session.add(tenant)
        await session.flush()

        admin = User(tenant_id=tenant.id, email=admin_email.lower(), role="admin")
        session.add(admin)
        await session.commit()

        print("Tenant provisioned successfully:")
        print(f"  ID:    {tenant.id}")
        print(f"  Slug:  {tenant.slug}")
        print(f"  Admin: {admin.email} ({admin.id})")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new tenant")
    parser.add_argument("--slug", help="Tenant slug (e.g., acme)")
    parser.add_argument("--name", help="Tenant display name (e.g., 'Acme')")
    parser.add_argument("--admin-email", help="Tenant administrator email")
    parser.add_argument(
        "--generate-key",
        action="store_true",
        help="Print a new CREDENTIAL_ENCRYPTION_KEY and exit",
    )
    args = parser.parse_args()

    if args.generate_key:
        from src.revsignal.core.encryption import generate_key

        print(generate_key())
        return

    if not (args.slug and args.name and args.admin_email):
        parser.error("--slug, --name and --admin-email are required")

    asyncio.run(provision(args.slug, args.name, args.admin_email))


if __name__ == "__main__":
    main()
