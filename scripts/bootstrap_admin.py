#!/usr/bin/env python3
"""Bootstrap a Super Admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Passw0rd' \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys

ADMIN_ROLE = "Super Admin"


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create the account if needed and make sure it holds the Super Admin role."""
    # Imported late so the env defaults below are in place first
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    role = runtime.store.get_role_by_name(ADMIN_ROLE)
    if role is None:
        raise RuntimeError(f"role {ADMIN_ROLE!r} is missing; default roles were not seeded")

    existing = runtime.store.get_user_by_email(email.strip().lower())
    if existing:
        if runtime.resolver.has_role(existing.id, ADMIN_ROLE):
            print(f"User {email} already holds {ADMIN_ROLE} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {ADMIN_ROLE} to existing user {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.resolver.assign_role(existing.id, role.id)
        print(f"Granted {ADMIN_ROLE} to existing user {email} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, first_name, last_name)
    runtime.resolver.assign_role(user.id, role.id)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Super Admin account for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--first-name", default="System", help="First name for a new account")
    parser.add_argument("--last-name", default="Administrator", help="Last name for a new account")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from warden.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.first_name, args.last_name, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if exc.detail:
            print(f"       {exc.detail}")
        sys.exit(1)
    except Exception as exc:
        print(f"Error: {exc}")
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
