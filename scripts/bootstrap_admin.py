#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='Secure#Pass123' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password 'Secure#Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_USERNAME: Username for the admin account (used only when creating)
    ADMIN_PASSWORD: Password for the admin account (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    username: str,
    password: str,
    full_name: str = "Platform Admin",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from fanauth.storage.models import Role, Tier
    from fanauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user(existing_user.id, role=Role.ADMIN, tier=Tier.ADMIN)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(
        email=email,
        password=password,
        username=username,
        full_name=full_name,
        ip_address="127.0.0.1",
        user_agent="bootstrap_admin",
    )
    runtime.store.update_user(user.id, role=Role.ADMIN, tier=Tier.ADMIN, is_verified=True)

    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the fan platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--full-name", default="Platform Admin", help="Display name")
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

    from fanauth.service.validation import password_error

    problem = password_error(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.username, args.password, args.full_name, args.dry_run
            )
        )

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
