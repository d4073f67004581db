#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_USERNAME: Username (defaults to the email's local part)
    ADMIN_PASSWORD: Password (must meet the service's strength rules)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import re
import sys

ADMIN_ROLE = "admin"


def default_username(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    return re.sub(r"[^a-z0-9_-]", "_", local)[:50] or "admin"


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    username: str | None = None,
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create an admin account, or grant the admin role to an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the environment defaults set in main() apply
    from authkernel.service.runtime import get_runtime
    from authkernel.service.validation import normalize_email

    runtime = runtime or get_runtime()
    email = normalize_email(email)
    admin_role = runtime.store.get_role_by_name(ADMIN_ROLE)
    if admin_role is None:
        raise RuntimeError("admin role is missing; apply sql/001_auth_schema.sql first")

    existing = runtime.store.get_user_by_email(email)
    if existing:
        roles = {r.name for r in runtime.store.get_user_roles(existing.id)}
        if ADMIN_ROLE in roles:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.users.assign_role(existing.id, admin_role.id)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, username or default_username(email), password)
    user_id = result.user["id"]
    await runtime.users.assign_role(user_id, admin_role.id)
    print(f"Created admin user: {email} (id: {user_id})")
    return {
        "user_id": user_id,
        "email": email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for authkernel",
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
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from authkernel.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, username=args.username, dry_run=args.dry_run
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        sys.exit(1)
    except RuntimeError as exc:
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
