#!/usr/bin/env python3
"""Provision a territory and mint its first invitation token.

Registration is invitation-only, so a fresh territory needs one token minted
outside the API before anyone can sign up.

Usage:
    # Group token for the founding members of a territory:
    python scripts/bootstrap_invitation.py --territory dk --name Denmark --max-uses 25

    # Single-use token bound to one email address:
    python scripts/bootstrap_invitation.py --territory dk --email founder@example.org

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Signing secret; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_invitation(
    territory: str,
    name: str,
    *,
    email: str | None = None,
    max_uses: int = 1,
    expires_in_days: int | None = None,
    purpose: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Provision ``territory`` if needed and create an invitation in it.

    Returns:
        dict with territory, token and status ('created' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from unityauth.service.runtime import get_runtime

    runtime = get_runtime()
    token_type = "single_use" if email else "group"

    if dry_run:
        print(f"[DRY RUN] Would provision territory {territory} and mint a {token_type} token")
        return {"territory": territory, "token": None, "status": "dry_run"}

    provisioned = runtime.store.provision_territory(territory, name)
    invitation = runtime.invitations.create(
        provisioned.code,
        token_type,
        email=email,
        max_uses=max_uses,
        expires_in_days=expires_in_days,
        created_by=None,
        purpose=purpose or "bootstrap",
    )
    return {
        "territory": provisioned.code,
        "token": invitation.token,
        "token_type": invitation.token_type,
        "max_uses": invitation.max_uses,
        "expires_at": invitation.expires_at.isoformat(),
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a territory and mint a bootstrap invitation token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--territory", required=True, help="Territory code, e.g. dk")
    parser.add_argument("--name", help="Display name (defaults to the upper-cased code)")
    parser.add_argument("--email", help="Bind a single_use token to this email address")
    parser.add_argument(
        "--max-uses",
        type=int,
        default=None,
        help="Use cap for group tokens (ignored with --email)",
    )
    parser.add_argument("--expires-in-days", type=int, default=None)
    parser.add_argument("--purpose", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    max_uses = 1 if args.email else (args.max_uses or 10)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_invitation(
            args.territory,
            args.name or args.territory.upper(),
            email=args.email,
            max_uses=max_uses,
            expires_in_days=args.expires_in_days,
            purpose=args.purpose,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nInvitation created successfully!")
        print(f"  Territory: {result['territory']}")
        print(f"  Token: {result['token']}")
        print(f"  Type: {result['token_type']} (max uses: {result['max_uses']})")
        print(f"  Expires: {result['expires_at']}")


if __name__ == "__main__":
    main()
