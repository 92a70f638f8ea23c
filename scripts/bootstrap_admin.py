#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_USERNAME=ops ADMIN_PASSWORD='Long-Passphrase-1' \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --username ops --password ... --dry-run

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (the memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Deferred so the environment defaults below are applied before settings load
    from authcore.service.guards import ADMIN_ROLE
    from authcore.service.requests import normalize_email
    from authcore.service.runtime import Runtime

    runtime = Runtime()
    try:
        email = normalize_email(email)
        existing = runtime.store.get_user_by_email(email)
        if existing:
            if existing.role == ADMIN_ROLE:
                print(f"User {email} already exists as admin (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            runtime.store.update_user_role(existing.id, ADMIN_ROLE)
            print(f"Promoted existing user {email} to admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        outcome = await runtime.auth.register(
            {"email": email, "username": username, "password": password}
        )
        if not outcome.ok:
            raise RuntimeError(f"{outcome.failure.kind.value}: {outcome.failure.message}")
        user = outcome.value.user
        runtime.store.update_user_role(user.id, ADMIN_ROLE)
        print(f"Created admin user: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--username", default=os.environ.get("ADMIN_USERNAME"), help="Admin username (or ADMIN_USERNAME)"
    )
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("ENABLE_TOKEN_SWEEP", "false")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.username, args.password, args.dry_run))
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
