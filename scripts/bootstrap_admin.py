#!/usr/bin/env python3
"""Create or promote the first superadmin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_USERNAME=root ADMIN_PASSWORD='S3cure-pass!' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@example.com --username root --password 'S3cure-pass!'

Environment Variables:
    ADMIN_EMAIL: Email for the superadmin
    ADMIN_USERNAME: Username for the superadmin (defaults to the email's local part)
    ADMIN_PASSWORD: Password for the superadmin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional; without it the in-memory
        store is snapshotted under SHARED_FS_ROOT/state)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Create a superadmin, or promote and activate an existing account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_superadmin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.runtime import get_runtime
    from warden.storage.models import Account, utc_now

    runtime = get_runtime()
    await runtime.start()
    try:
        now = utc_now()
        existing = await runtime.store.find_by_identity(email)

        if existing:
            if existing.role == "superadmin" and existing.is_active:
                print(f"Account {email} is already a superadmin (id: {existing.id})")
                return {"account_id": existing.id, "email": email, "status": "already_superadmin"}

            if dry_run:
                print(f"[DRY RUN] Would promote existing account {email} to superadmin")
                return {"account_id": existing.id, "email": email, "status": "dry_run"}

            await runtime.store.save(
                existing.evolve(now, role="superadmin", is_active=True, email_verified=True)
            )
            print(f"Promoted existing account {email} to superadmin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create superadmin: {username} <{email}>")
            return {"account_id": None, "email": email, "status": "dry_run"}

        account = await runtime.store.create(
            Account.new(
                username=username,
                email=email,
                password_hash=runtime.hasher.hash(password),
                now=now,
                role="superadmin",
                is_active=True,
                email_verified=True,
            )
        )
        print(f"Created superadmin: {username} <{email}> (id: {account.id})")
        return {"account_id": account.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin account for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Superadmin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Superadmin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Superadmin password (or set ADMIN_PASSWORD env var)",
    )
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    username = args.username or args.email.split("@", 1)[0]

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/warden-bootstrap"

    # Use the persisted memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ["MEMORY_STORE_PERSIST"] = "true"
        print("Note: Using in-memory store snapshot (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("LOG_LEVEL", "WARNING")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, username, args.password, args.dry_run)
        )

        if result["status"] == "created":
            print("\nSuperadmin created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Account ID: {result['account_id']}")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to superadmin!")
        elif result["status"] == "already_superadmin":
            print("\nNo changes needed - account is already a superadmin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
