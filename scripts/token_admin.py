#!/usr/bin/env python3
"""Operator commands for the token store.

Usage:
    # Create the Postgres tables (users, issued_token, user_tokens):
    DATABASE_URL=postgresql://... python scripts/token_admin.py migrate

    # Force-logout every session of a user:
    python scripts/token_admin.py revoke --user-id 5b0c...

    # Delete a user; its tokens are removed in the same transaction:
    python scripts/token_admin.py delete-user --user-id 5b0c...

    # Remove tokens past their TOKEN_TTL_MINUTES expiry:
    python scripts/token_admin.py purge-expired

Environment Variables:
    TOKEN_STORE_BACKEND: memory, postgres (default), or redis
    DATABASE_URL / REDIS_URL: connection strings for the chosen backend
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run(args: argparse.Namespace) -> dict:
    # Import here so --log-level applies before loggers are created
    from usertokens.config import get_settings
    from usertokens.logging import configure_logging, set_correlation_id

    configure_logging(args.log_level)
    set_correlation_id()

    if args.command == "migrate":
        from usertokens.storage.postgres import PostgresStore

        settings = get_settings()
        # Table verification happens after auto_migrate, so this also creates them
        store = PostgresStore(settings.database_url, min_size=1, max_size=1, auto_migrate=True)
        store.close()
        return {"status": "migrated"}

    from usertokens.service.runtime import get_runtime, shutdown_runtime

    runtime = get_runtime()
    try:
        if args.command == "revoke":
            revoked = runtime.tokens.revoke_all_for_user(args.user_id)
            return {"status": "revoked", "user_id": args.user_id, "revoked": revoked}
        if args.command == "delete-user":
            deleted = runtime.store.delete_user(args.user_id)
            return {"status": "deleted" if deleted else "not_found", "user_id": args.user_id}
        purged = runtime.tokens.purge_expired()
        return {"status": "purged", "purged": purged}
    finally:
        shutdown_runtime()


def main() -> int:
    parser = argparse.ArgumentParser(description="Token store maintenance commands")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="Create the Postgres token tables")
    revoke = sub.add_parser("revoke", help="Revoke every token of a user")
    revoke.add_argument("--user-id", required=True)
    delete = sub.add_parser("delete-user", help="Delete a user and cascade its tokens")
    delete.add_argument("--user-id", required=True)
    sub.add_parser("purge-expired", help="Remove expired tokens")

    args = parser.parse_args()
    result = run(args)
    print(json.dumps(result))
    return 0 if result.get("status") != "not_found" else 1


if __name__ == "__main__":
    sys.exit(main())
