#!/usr/bin/env python3
"""Provision a user account with a password for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_USERNAME=alice BOOTSTRAP_EMAIL=alice@example.com \
        BOOTSTRAP_PASSWORD='Correct-Horse-9' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --username alice --email alice@example.com \
        --password 'Correct-Horse-9' --role clinician

Environment Variables:
    BOOTSTRAP_USERNAME / BOOTSTRAP_EMAIL / BOOTSTRAP_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Require 12+ characters drawn from at least three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_user(
    username: str,
    email: str,
    password: str,
    *,
    role: str = "user",
    two_factor: bool = True,
    dry_run: bool = False,
) -> dict:
    """Create the user or reset the password of an existing one."""
    # Imported late so the environment above is in place before settings load
    from clinauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if dry_run:
        action = "reset password for" if existing else "create"
        print(f"[DRY RUN] Would {action} user {username}")
        return {"user_id": existing.id if existing else None, "status": "dry_run"}

    if existing:
        runtime.credentials.set_password(existing.id, password)
        print(f"Password reset for existing user {username} (id: {existing.id})")
        return {"user_id": existing.id, "status": "password_reset"}

    user = runtime.store.create_user(
        username, email, role=role, two_factor_enabled=two_factor
    )
    runtime.credentials.set_password(user.id, password)
    print(f"Created user {username} (id: {user.id})")
    return {"user_id": user.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision a clinauth user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("BOOTSTRAP_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument("--role", default=os.environ.get("BOOTSTRAP_ROLE", "user"))
    parser.add_argument(
        "--no-2fa",
        dest="two_factor",
        action="store_false",
        help="Create the account without the emailed second factor",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or BOOTSTRAP_{name.upper()} environment variable required")
            sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/clinauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.username,
            args.email,
            args.password,
            role=args.role,
            two_factor=args.two_factor,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"\nStatus: {result['status']}")


if __name__ == "__main__":
    main()
