#!/usr/bin/env python3
"""Create or promote the first portal administrator.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secure123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password Secure123 --name "Ops"

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password (8-128 chars with upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
    JWT_SECRET: Required, as for the service itself
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    if not 8 <= len(password) <= 128:
        return False
    return (
        any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
    )


async def bootstrap_admin(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` belongs to a verified, active admin.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from portalauth.service.runtime import Runtime
    from portalauth.storage.models import AccountStatus, Role, normalize_email

    runtime = Runtime()
    email = normalize_email(email)
    try:
        existing = runtime.store.get_user_by_email(email)
        if existing:
            if existing.role == Role.ADMIN.value and existing.verified:
                print(f"User {email} already exists as admin (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            runtime.store.update_user_role(existing.id, Role.ADMIN.value)
            runtime.store.mark_email_verified(existing.id)
            print(f"Promoted existing user {email} to admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        principal = runtime.store.create_user(
            name,
            email,
            await runtime.hasher.hash(password),
            Role.ADMIN.value,
            status=AccountStatus.ACTIVE.value,
            verified=True,
        )
        print(f"Created admin user: {email} (id: {principal.id})")
        return {"user_id": principal.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for the job portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
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
        print("Error: Password must be 8-128 characters with upper, lower and digit")
        sys.exit(1)
    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set (at least 32 bytes)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.name, args.email, args.password, args.dry_run)
        )
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
