#!/usr/bin/env python3
"""Seed the default roles, permissions and the system super-admin.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the super-admin
    ADMIN_PASSWORD: Password for the super-admin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

Running the script twice is safe: existing roles, permissions and users are
left as they are.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Dict, List

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_ROLES = (
    ("SUPER_ADMIN", "SYSTEM"),
    ("TENANT_ADMIN", "TENANT"),
    ("OPERATOR", "TENANT"),
)

DEFAULT_PERMISSIONS = {
    "transaction.create": "Create transactions",
    "transaction.read": "Read transactions",
    "transaction.approve": "Approve pending transactions",
    "report.read": "Read reports",
    "report.export": "Export reports",
    "inventory.read": "Read inventory",
    "inventory.update": "Adjust inventory levels",
}

ROLE_GRANTS = {
    "TENANT_ADMIN": list(DEFAULT_PERMISSIONS),
    "OPERATOR": ["transaction.create", "transaction.read", "report.read", "inventory.read"],
}


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def seed_roles(store) -> Dict[str, str]:
    from iamcore.storage.models import RoleScope

    role_ids: Dict[str, str] = {}
    for name, scope in DEFAULT_ROLES:
        role = store.get_role_by_name(name)
        if role is None:
            role = store.create_role(name, RoleScope(scope))
            print(f"Created role {name} ({scope})")
        role_ids[name] = role.id
    return role_ids


def seed_permissions(store, role_ids: Dict[str, str]) -> List[str]:
    existing = {p.code: p for p in store.list_permissions()}
    created: List[str] = []
    for code, description in DEFAULT_PERMISSIONS.items():
        if code not in existing:
            existing[code] = store.create_permission(code, description)
            created.append(code)
    for role_name, codes in ROLE_GRANTS.items():
        for code in codes:
            store.assign_permission(role_ids[role_name], existing[code].id)
    if created:
        print(f"Created permissions: {', '.join(created)}")
    return created


def bootstrap(email: str, password: str, dry_run: bool = False) -> dict:
    """Seed defaults and create the super-admin when missing.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from iamcore.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store

    existing_user = store.get_user_by_email(email, None)
    if dry_run:
        action = "keep" if existing_user else "create"
        print(f"[DRY RUN] Would seed {len(DEFAULT_ROLES)} roles and {len(DEFAULT_PERMISSIONS)} permissions")
        print(f"[DRY RUN] Would {action} super-admin {email}")
        return {"user_id": existing_user.id if existing_user else None, "email": email, "status": "dry_run"}

    role_ids = seed_roles(store)
    seed_permissions(store, role_ids)

    if existing_user:
        print(f"Super-admin {email} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    user = store.create_user(
        email.strip().lower(),
        runtime.passwords.hash(password),
        tenant_id=None,
        role_ids=[role_ids[runtime.settings.super_admin_role]],
    )
    print(f"Created super-admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed default roles and the system super-admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Super-admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Super-admin password (or set ADMIN_PASSWORD env var)",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from iamcore.service.errors import ServiceError
    from iamcore.storage.errors import StoreError

    try:
        result = bootstrap(args.email, args.password, args.dry_run)
    except (StoreError, ServiceError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper-admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - super-admin already exists.")


if __name__ == "__main__":
    main()
