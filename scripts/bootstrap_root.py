#!/usr/bin/env python3
"""Bootstrap the tenant-less root user.

Usage:
    # Using environment variables:
    ROOT_EMAIL=root@example.com ROOT_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_root.py

    # Or with command line args:
    python scripts/bootstrap_root.py --email root@example.com --password 'Str0ng!Passw0rd'

Environment Variables:
    ROOT_EMAIL: Email for the root user; also the login identifier
    ROOT_PASSWORD: Password for the root user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Required by the configuration layer
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_credentials(email: str, password: str) -> list[str]:
    """Run the API's own email and password rules; return the failures."""
    from coopapp.api.schemas import _validate_email, _validate_password_strength

    problems = []
    for check, value in ((_validate_email, email), (_validate_password_strength, password)):
        try:
            check(value)
        except ValueError as exc:
            problems.append(str(exc))
    return problems


def bootstrap_root(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the root user unless one with this email already exists.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from coopapp.service.passwords import set_password
    from coopapp.service.roles import Role
    from coopapp.service.runtime import get_runtime
    from coopapp.storage.models import User, new_id

    runtime = get_runtime()
    email = email.strip().lower()

    existing = runtime.store.find_user_by_identifier(None, email)
    if existing:
        print(f"Root user {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create root user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    record = User(
        id=new_id(),
        tenant_id=None,
        role=Role.ROOT.value,
        email=email,
        first_name="Root",
        is_active=True,
        is_verified=True,
    )
    user = runtime.store.create_user(set_password(record, password, runtime.passwords))
    print(f"Created root user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the root user for Coop App",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ROOT_EMAIL"),
        help="Root email (or set ROOT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ROOT_PASSWORD"),
        help="Root password (or set ROOT_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ROOT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ROOT_PASSWORD environment variable required")
        sys.exit(1)

    problems = validate_credentials(args.email, args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    # Only the store is touched here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_root(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nRoot user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  Log in with POST /v1/users/login-2fa")
    elif result["status"] == "exists":
        print("\nNo changes needed - root user already exists.")


if __name__ == "__main__":
    main()
