#!/usr/bin/env python3
"""Create the first platform ADMIN account, and optionally a first tenant.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Sup3rSecret python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password Sup3rSecret \
        --name "Platform Admin" --tenant-name "Escola Modelo"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (8+ chars, upper, lower and a digit)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from typing import Optional


def bootstrap_admin(
    email: str,
    password: str,
    name: str,
    tenant_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the ADMIN account unless one with this email already exists.

    Returns:
        dict with account_id, email, tenant_id and status
        ('created', 'already_admin' or 'dry_run')
    """
    # Imported late so the env defaults below are in place before settings load
    from edutenant.service.runtime import get_runtime
    from edutenant.storage.models import Role

    runtime = get_runtime()
    email = email.strip().lower()

    existing = [a for a in runtime.store.find_accounts_by_email(email) if a.role == Role.ADMIN]
    if existing:
        print(f"Account {email} already exists as admin (id: {existing[0].id})")
        return {"account_id": existing[0].id, "email": email, "tenant_id": None, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        if tenant_name:
            print(f"[DRY RUN] Would create tenant: {tenant_name}")
        return {"account_id": None, "email": email, "tenant_id": None, "status": "dry_run"}

    account = runtime.accounts.create_account(
        email=email, name=name, role=Role.ADMIN, secret=password
    )
    tenant_id = None
    if tenant_name:
        tenant_id = runtime.store.create_tenant(tenant_name).id
        print(f"Created tenant: {tenant_name} (id: {tenant_id})")

    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "tenant_id": tenant_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the platform admin for edutenant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Administrador", help="Display name for the admin")
    parser.add_argument("--tenant-name", default=None, help="Also create a first tenant")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from edutenant.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.email, args.password, args.name, args.tenant_name, args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        if result["tenant_id"]:
            print(f"  Tenant ID: {result['tenant_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
