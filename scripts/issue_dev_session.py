#!/usr/bin/env python3
"""Write a session row for local development and print its id.

Sessions are normally written by the identity provider. This script stands
in for it against a development database so the API can be exercised with
curl.

Usage:
    DATABASE_URL=postgresql://localhost:5432/freeme python scripts/issue_dev_session.py --user-id u-123

    curl -X POST http://localhost:8000/v1/ai-event \\
        -H "Authorization: Bearer <session id>" \\
        -H "Content-Type: application/json" \\
        -d '{"prompt": "Schedule lunch with Sam tomorrow at noon for 1 hour"}'

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required)
    DEV_USER_ID: Default for --user-id
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def issue_session(user_id: str, ttl_minutes: int, dry_run: bool = False) -> dict:
    # Import here so env vars set in main() are seen by the settings loader
    from freeme.config import get_settings
    from freeme.storage.postgres import PostgresStore

    settings = get_settings()
    if dry_run:
        print(f"[DRY RUN] Would create a {ttl_minutes} minute session for {user_id}")
        return {"user_id": user_id, "session_id": None, "status": "dry_run"}

    store = PostgresStore(
        settings.database_url, statement_timeout_ms=settings.store_statement_timeout_ms
    )
    try:
        session = store.create_session(user_id, ttl_minutes)
    finally:
        store.close()
    return {
        "user_id": user_id,
        "session_id": session.id,
        "expires_at": session.expires_at.isoformat(),
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Issue a development session for Freeme Calendar",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("DEV_USER_ID"),
        help="User id that owns the session (or set DEV_USER_ID env var)",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=60 * 24,
        help="Session lifetime in minutes (default: one day)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or DEV_USER_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; in-memory sessions die with this process")
        sys.exit(1)

    if args.ttl_minutes <= 0:
        print("Error: --ttl-minutes must be positive")
        sys.exit(1)

    try:
        result = issue_session(args.user_id, args.ttl_minutes, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSession created.")
        print(f"  User ID: {result['user_id']}")
        print(f"  Session ID: {result['session_id']}")
        print(f"  Expires: {result['expires_at']}")


if __name__ == "__main__":
    main()
