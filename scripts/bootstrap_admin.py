#!/usr/bin/env python3
"""Create the first Taskdesk administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd' --name Admin

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
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
    """Admins need at least 12 characters drawn from 3 of the 4 character classes."""
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


async def bootstrap_admin(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below are in place first
    from taskdesk.service.activity import PROMOTE_USER
    from taskdesk.service.auth import normalize_email
    from taskdesk.service.runtime import get_runtime
    from taskdesk.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing is not None:
        if not existing.is_active:
            raise RuntimeError(f"{email} is deactivated; restore it before promoting")
        if existing.is_admin:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        with runtime.store.transaction():
            runtime.store.update_user_role(existing.id, ROLE_ADMIN)
            runtime.tokens.revoke_all(existing.id)
            runtime.activity.record(existing.id, PROMOTE_USER, "Promoted by bootstrap script")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(name, email, password)
    with runtime.store.transaction():
        runtime.store.update_user_role(user.id, ROLE_ADMIN)
        runtime.activity.record(user.id, PROMOTE_USER, "Promoted by bootstrap script")
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a Taskdesk administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password"
    )
    parser.add_argument(
        "--name", default=os.environ.get("ADMIN_NAME", "Administrator"), help="Display name"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be done without changes"
    )
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL is required")
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD is required")
    if not validate_password(args.password):
        parser.error("password must be at least 12 characters with 3+ character classes")

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/taskdesk-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.name, args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed; user is already an admin",
        "dry_run": "[DRY RUN] no changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
