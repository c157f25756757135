#!/usr/bin/env python3
"""Inspect or revoke the active session of a principal.

Usage:
    # Show whether +15551234567 currently has a session:
    python scripts/session_admin.py --identity +15551234567

    # Force logout (the next refresh fails with session_revoked):
    python scripts/session_admin.py --identity +15551234567 --revoke

Environment Variables:
    PRINCIPAL_STORE, DATABASE_URL, DATA_ROOT: where principals live
    SESSION_BACKEND, REDIS_URL: where sessions live
    JWT_ACCESS_SECRET, JWT_REFRESH_SECRET: required outside TEST_MODE
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def session_status(identity: str, revoke: bool = False, dry_run: bool = False) -> dict:
    """Look up a principal's session and optionally revoke it.

    Returns:
        dict with principal_id, identity, and status ('unknown', 'active',
        'none', 'revoked' or 'dry_run')
    """
    # Import here so config is read after argument parsing
    from sessionrotor.service.runtime import get_runtime

    runtime = get_runtime()
    principal = await asyncio.to_thread(runtime.store.get_principal_by_identity, identity)
    if principal is None:
        return {"principal_id": None, "identity": identity, "status": "unknown"}

    active = await runtime.lifecycle.has_active_session(principal.id)
    if not revoke:
        return {
            "principal_id": principal.id,
            "identity": identity,
            "status": "active" if active else "none",
        }
    if dry_run:
        return {"principal_id": principal.id, "identity": identity, "status": "dry_run"}

    await runtime.lifecycle.logout(principal.id)
    return {"principal_id": principal.id, "identity": identity, "status": "revoked"}


def main():
    parser = argparse.ArgumentParser(
        description="Inspect or revoke a principal's session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identity", required=True, help="Principal phone number")
    parser.add_argument(
        "--revoke", action="store_true", help="Delete the principal's session"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(session_status(args.identity, args.revoke, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "unknown":
        print(f"No principal registered for {args.identity}")
        sys.exit(2)
    print(f"{result['identity']} (id: {result['principal_id']}): {result['status']}")


if __name__ == "__main__":
    main()
