#!/usr/bin/env python3
"""Bootstrap a verified admin account and, optionally, an OAuth client.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap.py

    # Admin plus a client application:
    python scripts/bootstrap.py --email admin@example.com --password SecurePassword123! \
        --client-id my-app --client-redirect-uri https://app.example.org/callback

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(runtime, email: str, password: str, *, name: Optional[str] = None,
                    dry_run: bool = False) -> dict:
    """Create a verified admin, or promote and re-password an existing account.

    Returns:
        dict with account_id, email and status ('created', 'promoted' or 'dry_run')
    """
    email = email.strip().lower()
    existing = runtime.store.get_account_by_email(email)
    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin account: {email}")
        return {"account_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if existing:
        account = existing
        status = "promoted"
    else:
        account = runtime.store.create_account(email, name=name, email_verified=True)
        status = "created"
    runtime.store.mark_email_verified(account.id)
    runtime.store.set_admin(account.id, True)
    runtime.credentials.set_password(account.id, password)
    return {"account_id": account.id, "email": email, "status": status}


def bootstrap_client(runtime, client_id: str, redirect_uri: str, *,
                     redirect_urls: Optional[List[str]] = None, name: Optional[str] = None,
                     dry_run: bool = False) -> dict:
    """Register an OAuth client with a freshly generated secret."""
    if runtime.store.get_client(client_id):
        print(f"Client {client_id} already exists")
        return {"client_id": client_id, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would register client: {client_id}")
        return {"client_id": client_id, "status": "dry_run"}
    secret = secrets.token_urlsafe(32)
    runtime.store.create_client(
        client_id,
        secret,
        redirect_uri,
        redirect_urls=redirect_urls or [],
        name=name or client_id,
    )
    return {"client_id": client_id, "client_secret": secret, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account (and OAuth client) for hid-auth",
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
    parser.add_argument("--name", default=None, help="Admin display name")
    parser.add_argument("--client-id", default=None, help="Register an OAuth client with this id")
    parser.add_argument("--client-redirect-uri", default=None, help="Primary redirect URI")
    parser.add_argument(
        "--client-alt-redirect",
        action="append",
        default=[],
        help="Alternate redirect URI (repeatable)",
    )
    parser.add_argument("--client-name", default=None, help="Client display name")
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

    if args.client_id and not args.client_redirect_uri:
        print("Error: --client-redirect-uri is required with --client-id")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/hidauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from hidauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = bootstrap_admin(
            runtime, args.email, args.password, name=args.name, dry_run=args.dry_run
        )
        if result["status"] == "created":
            print("\nAdmin account created successfully!")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to admin!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")

        if args.client_id:
            client = bootstrap_client(
                runtime,
                args.client_id,
                args.client_redirect_uri,
                redirect_urls=args.client_alt_redirect,
                name=args.client_name,
                dry_run=args.dry_run,
            )
            if client["status"] == "created":
                print("\nOAuth client registered!")
                print(f"  Client ID: {client['client_id']}")
                print(f"  Client Secret: {client['client_secret']}")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
