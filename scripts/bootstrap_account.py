#!/usr/bin/env python3
"""Bootstrap an account with a password credential.

Usage:
    # Using environment variables:
    ACCOUNT_NAME=root ACCOUNT_PASSWORD=SecurePassword123! python scripts/bootstrap_account.py --role root

    # Or with command line args:
    python scripts/bootstrap_account.py --name alice --email alice@example.com --password SecurePassword123!

Environment Variables:
    ACCOUNT_NAME: Login name of the account
    ACCOUNT_EMAIL: Primary email (optional)
    ACCOUNT_PASSWORD: Password (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Optional


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_account(
    name: str,
    password: str,
    *,
    email: Optional[str] = None,
    role: str = "user",
    dry_run: bool = False,
) -> dict:
    """Create an account and its credential; an existing account is left unchanged.

    Returns:
        dict with account_id, name, and status
    """
    # Import here to avoid loading config before env vars are set
    from profileauth.service.runtime import get_runtime
    from profileauth.storage.models import AccountRole

    runtime = get_runtime()
    target_role = AccountRole(role)

    existing = runtime.store.find_account_by_login(name)
    if existing:
        if existing.role == target_role:
            print(f"Account {name} already exists with role {role} (id: {existing.id})")
            return {"account_id": existing.id, "name": name, "status": "unchanged"}
        print(f"Account {name} already exists with role {existing.role.value}; not modified")
        return {"account_id": existing.id, "name": name, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {name} ({role})")
        return {"account_id": None, "name": name, "status": "dry_run"}

    account = runtime.store.create_account(name, email, role=target_role)
    await runtime.sessions.register_credential(account.id, password)
    pair = await runtime.sessions.login(name, password, device_info="bootstrap_account")

    print(f"Created account: {name} (id: {account.id})")
    return {
        "account_id": account.id,
        "name": name,
        "status": "created",
        "access_token": pair.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an account for the profile auth core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ACCOUNT_NAME"),
        help="Account name (or set ACCOUNT_NAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Primary email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        default="user",
        choices=["root", "admin", "user"],
        help="Account role",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.name:
        print("Error: --name or ACCOUNT_NAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
        # Throwaway key for a run whose accounts vanish on exit
        if not os.environ.get("JWT_SECRET"):
            import secrets
            os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    os.environ.setdefault("TEST_MODE", "true")

    try:
        result = asyncio.run(
            bootstrap_account(
                args.name,
                args.password,
                email=args.email,
                role=args.role,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Name: {result['name']}")
        print(f"  Account ID: {result['account_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
