#!/usr/bin/env python3
"""
TeamGuard -- operations CLI.

Usage:
  python main.py sweep
  python main.py create-admin --username root --email root@example.com
  python main.py create-admin --username root --email root@example.com --password 'S3cure!pass'

Commands:
  sweep          Delete expired sessions, password-reset tokens and cache
                 entries. Idempotent; safe to run from cron on every node.
  create-admin   Create an active, verified system administrator. Prompts
                 for the password when --password is omitted.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the credential/team database.
  CACHE_DB_PATH  SQLite file used by the cache.
  SECRET_KEY     Required unless DEBUG=true (see core/config.py).
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.guard import AccountGuard
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from cache.store import CacheStore
from core.errors import AppError


def _sweep(user_store: UserStore, cache: CacheStore) -> int:
    sessions, tokens = user_store.purge_expired()
    entries = cache.purge_expired()
    print(f"  Removed {sessions} expired session(s), {tokens} reset token(s), {entries} cache entr(ies).")
    return 0


def _create_admin(user_store: UserStore, cache: CacheStore, username: str, email: str, password: Optional[str]) -> int:
    if password is None:
        password = getpass.getpass("  Password: ")
        if password != getpass.getpass("  Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    service = AuthService(user_store, TokenService(user_store, cache), AccountGuard(user_store), cache)
    try:
        user = service.create_system_admin(username, email, password)
    except AppError as e:
        print(f"  [!] {e.code}: {e.message}")
        if e.detail:
            print(f"      {e.detail}")
        return 1
    print(f"  System administrator '{user.username}' created (id {user.id}).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="teamguard",
        description="TeamGuard operations: expiry sweep and administrator bootstrap.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py create-admin --username root --email root@example.com
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    subparsers.add_parser("sweep", help="Delete expired sessions, reset tokens and cache entries")

    admin = subparsers.add_parser("create-admin", help="Create a system administrator account")
    admin.add_argument("--username", required=True, help="Login name (3-64 chars: letters, digits, _ . -)")
    admin.add_argument("--email", required=True, help="Email address of the administrator")
    admin.add_argument(
        "--password",
        default=None,
        help="Password; prompted for interactively when omitted (preferred, keeps it out of shell history)",
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    user_store = UserStore()
    cache = CacheStore()
    try:
        if args.command == "sweep":
            return _sweep(user_store, cache)
        return _create_admin(user_store, cache, args.username, args.email, args.password)
    finally:
        cache.close()
        user_store.close()


if __name__ == "__main__":
    sys.exit(main())
