#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


def _promote(runtime, user_id: str) -> None:
    from careauth.storage.models import AccountStatus, UserRole, new_id

    now = datetime.now(timezone.utc)
    with runtime.store.transaction():
        user = runtime.store.get_user(user_id)
        runtime.store.update_user(
            replace(
                user,
                role=ADMIN_ROLE,
                status=AccountStatus.ACTIVE,
                email_verified=True,
            ),
            expected_version=user.version,
        )
        if not any(r.role_name == ADMIN_ROLE for r in runtime.store.list_user_roles(user_id)):
            runtime.store.assign_user_role(
                UserRole(
                    id=new_id(),
                    user_id=user_id,
                    role_id=ADMIN_ROLE,
                    role_name=ADMIN_ROLE,
                    section="System",
                    assigned_at=now,
                )
            )


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from careauth.service.runtime import get_runtime
    from careauth.storage.common import normalize_email

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(normalize_email(email))

    if existing_user:
        if existing_user.role == ADMIN_ROLE:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        _promote(runtime, existing_user.id)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, first_name="System", last_name="Administrator")
    if not result.success:
        raise RuntimeError("; ".join([result.message, *result.errors]))
    user_id = result.data["user_id"]
    _promote(runtime, user_id)
    print(f"Created admin user: {email} (id: {user_id})")
    return {"user_id": user_id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for CareAuth",
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

    from careauth.service.passwords import password_policy_violations

    problems = password_policy_violations(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/careauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
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
