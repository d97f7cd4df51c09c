#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create an admin account or promote an existing one.

    Bootstrapped accounts are marked verified since nobody can click the link.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from genesis_auth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.find_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {existing_user.email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing_user.email} to admin")
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "dry_run"}

        runtime.store.atomic_update_user(existing_user.id, {}, {"role": "admin"})
        print(f"Promoted existing user {existing_user.email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": existing_user.email, "status": "promoted"}

    # hashing first so a weak password fails before anything is written
    password_hash = runtime.auth.hasher.hash(password)

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.insert_user(
        email=email,
        password_hash=password_hash,
        name=name,
        role="admin",
        is_email_verified=True,
    )
    print(f"Created admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Genesis Auth",
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
    parser.add_argument("--name", default="Administrator", help="Display name for a new account")
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/genesis-auth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # rate limits and revocation markers are irrelevant to a one-shot script
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from genesis_auth.service.errors import ValidationError

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except ValidationError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
