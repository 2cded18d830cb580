#!/usr/bin/env python3
"""Create (or reset) an administrator account and put it on an admin role.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123! --role Administrator --permission reports.manage

Environment Variables:
    ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_ROLE = "Administrator"


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    role_name: str = DEFAULT_ROLE,
    permissions: Optional[List[str]] = None,
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Returns a dict with user_id, username and status."""
    # Import here so env defaults are applied before settings load
    from reportguard.service.errors import ConflictError
    from reportguard.service.passwords import ARGON2ID_ALGO
    from reportguard.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} admin user {username} on role {role_name}")
        return {"user_id": existing.id if existing else None, "username": username, "status": "dry_run"}

    role = runtime.store.get_role_by_name(role_name)
    if role is None:
        role = runtime.permissions.create_role(role_name, "Bootstrap administrator role")
        print(f"Created role {role_name} (id: {role.id})")

    for name in permissions or []:
        if runtime.store.get_permission(name) is None:
            resource, _, action = name.partition(".")
            try:
                runtime.permissions.create_permission(name, resource, action or "manage")
            except ConflictError:
                pass
        await runtime.permissions.grant_role_permission(role.name, name, granted_by="bootstrap")

    if existing:
        status = "already_admin" if existing.role_id == role.id else "promoted"
        if reset_password:
            password_hash, salt = runtime.hasher.hash(password)
            runtime.store.save_password(
                existing.id, password_hash, salt, ARGON2ID_ALGO, at=runtime.clock.now()
            )
            await runtime.tokens.revoke_all_for_user(existing.id, reason="Password reset")
            await runtime.sessions.terminate_all(existing.id, "Password reset")
            status = "password_reset"
        if existing.role_id != role.id:
            await runtime.permissions.assign_role(existing.id, role.name, assigned_by="bootstrap")
        print(f"Updated existing user {username} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": status}

    user = await runtime.auth.register(username, email, password, role=role.name)
    await runtime.permissions.assign_role(user.id, role.name, assigned_by="bootstrap")
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
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
    parser.add_argument("--role", default=DEFAULT_ROLE, help="Role to create/assign")
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        help="Permission name to grant to the role (repeatable), e.g. reports.manage",
    )
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing account and end its sessions",
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/reportguard-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username,
                args.email,
                args.password,
                role_name=args.role,
                permissions=args.permission,
                reset_password=args.reset_password,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user moved to the admin role!")
    elif result["status"] == "password_reset":
        print("\nPassword reset; all sessions for the account were ended.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
