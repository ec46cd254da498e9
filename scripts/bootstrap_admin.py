#!/usr/bin/env python3
"""Create (or promote) an administrator account.

Staff roles cannot self-register through the API, so the first admin is
created out of band with this script.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass' \
        --first-name Ops --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same policy as registration)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    first_name: str = "Admin",
    last_name: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create an admin account or promote the existing one for ``email``.

    Returns:
        dict with account_id, email and status (created, promoted,
        already_admin or dry_run)
    """
    # Imported late so the environment defaults below apply to Settings
    from quickauth.service.accounts import NewAccount
    from quickauth.service.runtime import get_runtime
    from quickauth.storage.models import Role, new_profile_for

    runtime = get_runtime()
    records = runtime.auth.records
    records.password_policy.check(password)

    existing = records.find_by_email(email)
    if existing is not None:
        if existing.role == Role.ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        existing.role = Role.ADMIN
        existing.profile = new_profile_for(Role.ADMIN)
        records.save(existing)
        print(f"Promoted {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = records.create(
        NewAccount(
            email=email,
            password=password,
            first_name=first_name,
            last_name=last_name,
            role=Role.ADMIN.value,
        )
    )
    account.is_email_verified = True
    account = records.save(account)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the auth service",
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
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Sessions are not issued here, so a missing Redis is not fatal
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("ENVIRONMENT", "development")

    from quickauth.service.errors import ServiceError
    from quickauth.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if exc.detail:
            print(f"       {exc.detail}")
        sys.exit(1)
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
