#!/usr/bin/env python3
"""Create a tenant with its first admin user.

Usage:
    # Using environment variables:
    TENANT_NAME=Acme ADMIN_EMAIL=admin@acme.test ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant-name Acme --email admin@acme.test \
        --password SecurePassword123! --rbac

Environment Variables:
    TENANT_NAME: Display name for the new tenant
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (schema from scripts/schema.sql)
    JWT_SECRET: Signing secret shared with the API servers
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_tenant(
    tenant_name: str, email: str, password: str, *, rbac: bool, dry_run: bool = False
) -> dict:
    # Imported late so the environment is settled before settings load
    from tenantguard.service.runtime import get_runtime
    from tenantguard.service.sessions import ClientInfo

    runtime = get_runtime()
    await runtime.startup()
    try:
        existing = await runtime.store.get_user_by_email(email)
        if existing:
            print(f"User {email} already exists in tenant {existing.tenant_id}")
            return {"user_id": existing.id, "tenant_id": existing.tenant_id, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create tenant {tenant_name!r} with admin {email}")
            return {"user_id": None, "tenant_id": None, "status": "dry_run"}

        outcome = await runtime.sessions.signup(
            tenant_name, email, password, ClientInfo(caller_address="127.0.0.1", user_agent="bootstrap")
        )
        if not outcome.ok:
            raise RuntimeError(f"signup failed: {outcome.reason.value}")
        principal = outcome.principal
        if rbac:
            await runtime.store.set_tenant_rbac(principal.tenant_id, True)
        return {
            "user_id": principal.user_id,
            "tenant_id": principal.tenant_id,
            "status": "created",
            "rbac_enabled": rbac,
        }
    finally:
        await runtime.shutdown()


def _password_ok(password: str) -> bool:
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and its admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-name", default=os.environ.get("TENANT_NAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--rbac", action="store_true", help="Enable RBAC for the new tenant")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for flag, value in (
        ("--tenant-name", args.tenant_name),
        ("--email", args.email),
        ("--password", args.password),
    ):
        if not value:
            print(f"Error: {flag} (or its environment variable) is required")
            sys.exit(1)

    if not _password_ok(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; an in-memory tenant would be discarded")
        sys.exit(1)
    os.environ.setdefault("USE_MEMORY_STORE", "false")

    try:
        result = asyncio.run(
            bootstrap_tenant(
                args.tenant_name,
                args.email,
                args.password,
                rbac=args.rbac,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant created successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Admin user ID: {result['user_id']}")
        print(f"  RBAC enabled: {result['rbac_enabled']}")


if __name__ == "__main__":
    main()
