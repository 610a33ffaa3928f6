#!/usr/bin/env python3
"""
Gatehouse -- maintenance commands for the auth and session stores.

Usage:
  python main.py init-db
  python main.py purge-sessions
  python main.py reset-limit login:alice@example.com
  python main.py seed-permissions admin reports:access:1 uploads:quantity:10

Environment variables (see core/config.py for the full list):
  DATABASE_URL   SQLAlchemy URL of the durable store (default: sqlite gatehouse.db)
  REDIS_URL      Redis URL for rate-limit counters and cached sessions
"""

import argparse
import logging
from typing import Optional

from auth.groups import GroupStore
from auth.models import ACCESS, QUANTITY, Permission
from auth.store import create_db_engine, init_db
from cache.client import create_redis
from cache.limiter import RateLimiter
from core.config import get_settings
from sessions.store import SqlSessionStore


def parse_permission(spec: str) -> Permission:
    """Parse NAME[:type[:default]] into a Permission.

    type is "access" (default) or "quantity"; default is an integer (default 0).
    """
    parts = spec.split(":")
    if len(parts) > 3 or not parts[0].strip():
        raise ValueError(f"'{spec}' is not NAME[:type[:default]]")
    name = parts[0].strip()
    ptype = parts[1].strip() if len(parts) > 1 and parts[1].strip() else ACCESS
    if ptype not in (ACCESS, QUANTITY):
        raise ValueError(f"'{spec}': type must be '{ACCESS}' or '{QUANTITY}'")
    try:
        default = int(parts[2]) if len(parts) > 2 and parts[2].strip() else 0
    except ValueError:
        raise ValueError(f"'{spec}': default must be an integer") from None
    return Permission(name=name, type=ptype, default_value=default)


def _init_db(args: argparse.Namespace) -> int:
    engine = create_db_engine(args.database_url)
    try:
        init_db(engine)
    finally:
        engine.dispose()
    print("  Schema ready.")
    return 0


def _purge_sessions(args: argparse.Namespace) -> int:
    engine = create_db_engine(args.database_url)
    store = SqlSessionStore(engine)
    try:
        removed = store.delete_expired()
    finally:
        store.close()
        engine.dispose()
    print(f"  {removed} expired session(s) removed.")
    return 0


def _reset_limit(args: argparse.Namespace) -> int:
    client = create_redis(args.redis_url)
    try:
        RateLimiter(client).reset(args.key)
    finally:
        client.close()
    print(f"  Counter '{args.key}' cleared.")
    return 0


def _seed_permissions(args: argparse.Namespace) -> int:
    try:
        catalog = [parse_permission(spec) for spec in args.permissions]
    except ValueError as e:
        print(f"  [!] {e}")
        return 2
    engine = create_db_engine(args.database_url)
    try:
        init_db(engine)
        GroupStore(engine).seed_permissions(catalog)
    finally:
        engine.dispose()
    for p in catalog:
        print(f"  {p.id:>4}  {p.name} ({p.type}, default {p.default_value})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Maintenance commands for Gatehouse auth and session stores.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py purge-sessions
  python main.py reset-limit login:alice@example.com
  python main.py seed-permissions admin reports:access:1 uploads:quantity:10
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this command",
    )
    parser.add_argument(
        "--redis-url",
        metavar="URL",
        default=None,
        help="Override REDIS_URL for this command",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init-db", help="Create any missing tables")
    p.set_defaults(func=_init_db)

    p = sub.add_parser("purge-sessions", help="Delete durable session rows past their expiry")
    p.set_defaults(func=_purge_sessions)

    p = sub.add_parser("reset-limit", help="Clear one rate-limit counter (e.g. login:<email>)")
    p.add_argument("key", metavar="KEY")
    p.set_defaults(func=_reset_limit)

    p = sub.add_parser("seed-permissions", help="Insert permissions that do not exist yet")
    p.add_argument("permissions", nargs="+", metavar="NAME[:type[:default]]")
    p.set_defaults(func=_seed_permissions)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
