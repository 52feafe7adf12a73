#!/usr/bin/env python3
"""Provision an admin, customer-service agent or user with a password.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=ops ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --login ops --password SecurePassword123!
    python scripts/bootstrap_admin.py --role customer_service --login 13900000001 --password ...

Admins sign in with a username; users and agents with a phone number.
Principals are written to SHARED_FS_ROOT/state/principals.json, which the
server reads on startup.

Environment Variables:
    ADMIN_USERNAME: Login for the principal
    ADMIN_PASSWORD: Password (must meet complexity requirements)
    SHARED_FS_ROOT: Directory holding persisted state
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ROLE_CHOICES = ("admin", "customer_service", "user")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_principal(
    role: str, login: str, password: str, name: str | None = None, dry_run: bool = False
) -> dict:
    """Create a principal or reset its password.

    Returns:
        dict with principal_id, login, role and status
        ('created', 'password_reset' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from chatguard.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_login(role, login)

    if dry_run:
        action = "reset the password of" if existing else "create"
        print(f"[DRY RUN] Would {action} {role} {login}")
        return {
            "principal_id": existing.id if existing else None,
            "login": login,
            "role": role,
            "status": "dry_run",
        }

    if existing:
        runtime.login.save_password(existing.id, password)
        print(f"Reset password for existing {role} {login} (id: {existing.id})")
        return {
            "principal_id": existing.id,
            "login": login,
            "role": role,
            "status": "password_reset",
        }

    if role == "admin":
        record = runtime.store.create_admin(login, name)
    elif role == "customer_service":
        record = runtime.store.create_customer_service(login, name)
    else:
        record = runtime.store.create_user(login, name)
    runtime.login.save_password(record.id, password)

    print(f"Created {role}: {login} (id: {record.id})")
    return {
        "principal_id": record.id,
        "login": login,
        "role": role,
        "status": "created",
        "token": runtime.codec.issue(record.id, role),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a chatguard principal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--role",
        choices=ROLE_CHOICES,
        default="admin",
        help="Principal kind to create (default: admin)",
    )
    parser.add_argument(
        "--login",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Username for admins, phone number otherwise (or set ADMIN_USERNAME)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.login:
        print("Error: --login or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Provisioning only touches the principal store
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_principal(
            args.role, args.login, args.password, args.name, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\n{args.role} created successfully!")
        print(f"  Login: {result['login']}")
        print(f"  Principal ID: {result['principal_id']}")
        print(f"  Token: {result['token'][:50]}...")
    elif result["status"] == "password_reset":
        print("\nPassword updated.")


if __name__ == "__main__":
    main()
