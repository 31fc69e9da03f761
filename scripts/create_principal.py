#!/usr/bin/env python3
"""Create a principal with a password, or update the password of an existing one.

Usage:
    # Using environment variables:
    PRINCIPAL_EMAIL=ops@example.com PRINCIPAL_PASSWORD='Secure-Passw0rd!' python scripts/create_principal.py

    # Or with command line args:
    python scripts/create_principal.py --email ops@example.com --password 'Secure-Passw0rd!'

Environment Variables:
    PRINCIPAL_EMAIL: Email for the principal
    PRINCIPAL_PASSWORD: Password for the principal (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the file-backed memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

from authcore.storage.models import PrincipalStatus


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def create_principal(
    email: str, password: str, status: PrincipalStatus, dry_run: bool = False
) -> dict:
    """Create the principal or reset its password.

    Returns:
        dict with principal_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if dry_run:
        action = "update password for" if existing else "create"
        print(f"[DRY RUN] Would {action} principal: {email}")
        return {
            "principal_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    if existing:
        runtime.passwords.save_password(existing.id, password)
        if existing.status != status:
            runtime.store.set_principal_status(existing.id, status)
        print(f"Updated principal {email} (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "updated"}

    principal = runtime.store.create_principal(email, status, now=runtime.clock.now())
    runtime.passwords.save_password(principal.id, password)
    print(f"Created principal: {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": principal.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a login principal for AuthCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("PRINCIPAL_EMAIL"),
        help="Principal email (or set PRINCIPAL_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PRINCIPAL_PASSWORD"),
        help="Principal password (or set PRINCIPAL_PASSWORD env var)",
    )
    parser.add_argument(
        "--status",
        choices=[s.value for s in PrincipalStatus],
        default=PrincipalStatus.ACTIVE.value,
        help="Account status (default: active)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or PRINCIPAL_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or PRINCIPAL_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use the file-backed memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_principal(
            args.email, args.password, PrincipalStatus(args.status), args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPrincipal created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "updated":
        print("\nPassword updated for existing principal.")


if __name__ == "__main__":
    main()
