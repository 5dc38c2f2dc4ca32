#!/usr/bin/env python3
"""Bootstrap an administrator identity.

Registration only admits standard identities, so the first administrator is
written straight to the store.

Usage:
    # Using environment variables:
    ADMIN_HANDLE=root ADMIN_CONTACT=root@example.com ADMIN_SECRET=adminpw python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --handle root --contact root@example.com --secret adminpw

Environment Variables:
    ADMIN_HANDLE: Handle for the administrator
    ADMIN_CONTACT: Contact address for the administrator
    ADMIN_SECRET: Secret for the administrator
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(store, handle: str, contact: str, secret: str, dry_run: bool = False) -> dict:
    """Create an administrator record unless the handle is already taken.

    Returns:
        dict with subject_id, handle, and status ('created', 'already_admin',
        'dry_run')

    Raises:
        ValueError: if the handle or contact belongs to a non-administrator.
    """
    from kispha.storage.models import IdentityRecord, Role

    existing = store.get_by_handle(handle) or store.get_by_contact(contact)
    if existing:
        if existing.is_administrator:
            print(f"Identity {existing.handle} is already an administrator (id: {existing.subject_id})")
            return {
                "subject_id": existing.subject_id,
                "handle": existing.handle,
                "status": "already_admin",
            }
        # Roles are immutable, so a standard identity cannot be promoted
        raise ValueError(
            f"handle or contact already used by standard identity {existing.subject_id}"
        )

    if dry_run:
        print(f"[DRY RUN] Would create administrator: {handle}")
        return {"subject_id": None, "handle": handle, "status": "dry_run"}

    record = store.save(
        IdentityRecord(
            handle=handle,
            contact=contact,
            secret=secret,
            role=Role.ADMINISTRATOR.value,
        )
    )
    print(f"Created administrator: {handle} (id: {record.subject_id})")
    return {"subject_id": record.subject_id, "handle": handle, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator identity for Kispha",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--handle",
        default=os.environ.get("ADMIN_HANDLE"),
        help="Administrator handle (or set ADMIN_HANDLE env var)",
    )
    parser.add_argument(
        "--contact",
        default=os.environ.get("ADMIN_CONTACT"),
        help="Administrator contact address (or set ADMIN_CONTACT env var)",
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("ADMIN_SECRET"),
        help="Administrator secret (or set ADMIN_SECRET env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("handle", "contact", "secret"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/kispha-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from kispha.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = bootstrap_admin(
            runtime.store, args.handle, args.contact, args.secret, args.dry_run
        )
        if result["status"] == "created":
            print("\nAdministrator created successfully!")
            print(f"  Handle: {result['handle']}")
            print(f"  Subject ID: {result['subject_id']}")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - identity is already an administrator.")
        runtime.close()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
