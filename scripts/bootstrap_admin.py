#!/usr/bin/env python3
"""Bootstrap the first admin user.

With open registration disabled only admins may register users, so a fresh
deployment needs one admin created out of band.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123 \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (8-128 chars, 1 uppercase, 1 digit)
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "Admin",
    last_name: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create an admin user or promote an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from berthcare.service.runtime import get_runtime
    from berthcare.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.ADMIN:
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, Role.ADMIN)
        # Tokens minted under the old role must not outlive the promotion
        runtime.store.revoke_all_refresh_records(existing_user.id)
        return {"user_id": existing_user.id, "email": existing_user.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.hasher.hash(password),
        role=Role.ADMIN,
        zone_id=None,
        first_name=first_name,
        last_name=last_name,
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for BerthCare",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    from berthcare.api.schemas import _validate_email, _validate_password_strength

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        return 1
    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    if not os.environ.get("DATABASE_URL") and not args.dry_run:
        print("Error: DATABASE_URL is required; an in-memory admin would vanish on exit")
        return 1
    if args.dry_run and not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
    # The bootstrap never touches the blacklist or rate counters
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    result = bootstrap_admin(
        email,
        args.password,
        first_name=args.first_name,
        last_name=args.last_name,
        dry_run=args.dry_run,
    )
    messages = {
        "created": "Created admin user",
        "promoted": "Promoted existing user to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made for",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
