#!/usr/bin/env python3
"""Create a user account from the command line.

Usage:
    # Password account:
    python scripts/create_user.py --email ann@example.com --name Ann --password s3cret

    # Invited account with no password (signs in by magic link or Google):
    python scripts/create_user.py --email bob@example.com --name Bob

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: Directory for the memory-store snapshot and generated secrets
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(
    email: str,
    name: str | None,
    *,
    password: str | None = None,
    nickname: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the account unless the email is already taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # imported late so the env defaults below apply before settings load
    from gatehouse.api.schemas import normalize_email
    from gatehouse.service.runtime import get_runtime
    from gatehouse.storage.errors import ConstraintViolation

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_user_by_email(email)
    if existing:
        return {"user_id": existing.id, "email": email, "status": "exists"}
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = runtime.hasher.hash(password) if password else None
    try:
        user = runtime.store.create_user(
            email, name=name, nickname=nickname, password_hash=password_hash
        )
    except ConstraintViolation:
        existing = runtime.store.get_user_by_email(email)
        return {"user_id": existing.id if existing else None, "email": email, "status": "exists"}
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a Gatehouse user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"), help="User email")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--nickname", default=None, help="Nickname")
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="Password (omit for an invited, password-less account)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/gatehouse")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = create_user(
            args.email,
            args.name,
            password=args.password,
            nickname=args.nickname,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created user {result['email']} (id: {result['user_id']})")
    elif result["status"] == "exists":
        print(f"User {result['email']} already exists (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] Would create user {result['email']}")


if __name__ == "__main__":
    main()
