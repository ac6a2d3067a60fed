#!/usr/bin/env python3
"""Bootstrap a platform operator, optionally with a first community.

Usage:
    # Using environment variables:
    OPERATOR_EMAIL=ops@example.com OPERATOR_PASSWORD=SecurePassword123! python scripts/bootstrap_operator.py

    # Or with command line args, seeding a community at the same time:
    python scripts/bootstrap_operator.py --email ops@example.com --password SecurePassword123! \
        --community-name "Maple Court" --community-subdomain maple-court

Environment Variables:
    OPERATOR_EMAIL: Email for the operator account
    OPERATOR_PASSWORD: Password for the operator account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

OPERATOR_ROLE = "platform_operator"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_operator(
    email: str,
    password: str,
    *,
    name: str = "Platform Operator",
    community_name: Optional[str] = None,
    community_subdomain: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote the operator account and seed a community if asked.

    Returns:
        dict with user_id, email, status and, when seeded, community_id
    """
    # Import here to avoid loading config before env vars are set
    from communitypulse.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    result: dict = {"email": email}

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        result["user_id"] = existing_user.id
        if existing_user.role == OPERATOR_ROLE:
            print(f"User {email} already exists as operator (id: {existing_user.id})")
            result["status"] = "already_operator"
        elif dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to operator")
            result["status"] = "dry_run"
        else:
            runtime.store.update_user_role(existing_user.id, OPERATOR_ROLE)
            print(f"Promoted existing user {email} to operator (id: {existing_user.id})")
            result["status"] = "promoted"
        operator_id = existing_user.id
    elif dry_run:
        print(f"[DRY RUN] Would create operator: {email}")
        result.update({"user_id": None, "status": "dry_run"})
        operator_id = None
    else:
        # Operators carry no home community
        user = runtime.store.create_user(email, name, tenant_id=None, role=OPERATOR_ROLE)
        runtime.auth.save_password(user.id, password)
        print(f"Created operator: {email} (id: {user.id})")
        result.update({"user_id": user.id, "status": "created"})
        operator_id = user.id

    if community_subdomain:
        key = community_subdomain.strip().lower()
        tenant = runtime.store.get_tenant_by_key(key, active_only=False)
        if tenant is not None:
            print(f"Community {key} already exists (id: {tenant.id})")
            result["community_id"] = tenant.id
        elif dry_run:
            print(f"[DRY RUN] Would create community: {key}")
        else:
            tenant = runtime.store.create_tenant(
                key,
                community_name or key,
                contact_email=email,
                created_by=operator_id,
            )
            print(f"Created community: {tenant.name} (id: {tenant.id}, subdomain: {tenant.key})")
            result["community_id"] = tenant.id

    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform operator for CommunityPulse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OPERATOR_EMAIL"),
        help="Operator email (or set OPERATOR_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OPERATOR_PASSWORD"),
        help="Operator password (or set OPERATOR_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Platform Operator", help="Display name")
    parser.add_argument("--community-name", default=None, help="Name of a community to seed")
    parser.add_argument(
        "--community-subdomain", default=None, help="Subdomain of a community to seed"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OPERATOR_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OPERATOR_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/communitypulse-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_operator(
            args.email,
            args.password,
            name=args.name,
            community_name=args.community_name,
            community_subdomain=args.community_subdomain,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOperator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to operator!")
    elif result["status"] == "already_operator":
        print("\nNo changes needed - user is already an operator.")
    if result.get("community_id"):
        print(f"  Community ID: {result['community_id']}")


if __name__ == "__main__":
    main()
