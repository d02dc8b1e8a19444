#!/usr/bin/env python3
"""
AppPortal -- operator command line.

Usage:
  python main.py create-admin alice
  python main.py create-admin alice --role super_admin
  python main.py sync
  python main.py sync --sync-id nightly-2026-10-18
  python main.py sync-logs --limit 5
  python main.py sync-settings
  python main.py sync-settings --enable --frequency 12
  python main.py sync-settings --disable

Environment variables:
  DATABASE_URL       Portal database (default: portal/appportal.db)
  AUTH_DATABASE_URL  User database (default: auth/appportal_auth.db)
  SECRET_KEY, ENCRYPTION_KEY, DEBUG -- see core/config.py
"""

import argparse
import getpass
import json
import sys

from auth.models import ROLES, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.exceptions import PortalError
from portal.settings import SettingsGate
from portal.store import PortalStore
from portal.sync import CatalogSyncService, InlineExecutor


def _portal_store() -> PortalStore:
    url = get_settings().database_url
    return PortalStore(url) if url else PortalStore()


def _user_store() -> UserStore:
    url = get_settings().auth_database_url
    return UserStore(url) if url else UserStore()


def _gate(store: PortalStore) -> SettingsGate:
    gate = SettingsGate(store, stale_after_hours=get_settings().sync_stale_after_hours)
    gate.seed_defaults()
    return gate


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create_admin(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    users = _user_store()
    try:
        if users.get_by_username(args.username) is not None:
            print(f"  [!] User '{args.username}' already exists.")
            return 1
        user_id = users.create_user(
            User(username=args.username, role=args.role, hashed_password=hash_password(password))
        )
    finally:
        users.close()
    print(f"  Created {args.role} '{args.username}' (id {user_id}).")
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Run one on-demand sync to completion in this process."""
    store = _portal_store()
    try:
        service = CatalogSyncService(store, _gate(store), executor=InlineExecutor())
        try:
            sync_id = service.trigger(actor_id=None, sync_id=args.sync_id)
        except PortalError as exc:
            print(f"  [!] {exc.message}")
            return 1
        log = store.get_sync_log(sync_id)
    finally:
        store.close()

    print(f"  Sync {sync_id}: {log.status}")
    print(f"    added={log.apps_added} updated={log.apps_updated} marked_unavailable={log.apps_marked_unavailable}")
    for err in log.errors:
        print(f"    [!] {err.get('field')}: {err.get('message')}")
    return 0 if log.status == "completed" else 1


def cmd_sync_logs(args: argparse.Namespace) -> int:
    store = _portal_store()
    try:
        logs = store.list_sync_logs(limit=args.limit)
    finally:
        store.close()
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "sync_id": log.sync_id,
                        "status": log.status,
                        "sync_mode": log.sync_mode,
                        "start_time": log.start_time,
                        "end_time": log.end_time,
                        "apps_added": log.apps_added,
                        "apps_updated": log.apps_updated,
                        "apps_marked_unavailable": log.apps_marked_unavailable,
                        "errors": log.errors,
                    }
                    for log in logs
                ],
                indent=2,
            )
        )
        return 0
    if not logs:
        print("  No sync runs recorded.")
        return 0
    for log in logs:
        print(
            f"  {log.start_time}  {log.status:<9}  {log.sync_mode:<9}  "
            f"+{log.apps_added} ~{log.apps_updated} -{log.apps_marked_unavailable}  {log.sync_id}"
        )
    return 0


def cmd_sync_settings(args: argparse.Namespace) -> int:
    store = _portal_store()
    try:
        gate = _gate(store)
        if args.enable is not None or args.frequency is not None:
            try:
                config = gate.update_sync_settings(
                    updated_by=None, enabled=args.enable, frequency_hours=args.frequency
                )
            except PortalError as exc:
                print(f"  [!] {exc.message}")
                return 1
        else:
            config = gate.load_sync_config()
    finally:
        store.close()
    print(f"  enabled:          {config.enabled}")
    print(f"  frequency_hours:  {config.frequency_hours}")
    print(f"  last_run:         {config.last_run or 'never'}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="appportal",
        description="Operator commands for the AppPortal service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-admin", help="Create a local admin account")
    p.add_argument("username")
    p.add_argument("--password", help="Read from a prompt when omitted")
    p.add_argument("--role", choices=[r for r in ROLES if r != "user"], default="admin")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("sync", help="Run a catalog sync now and wait for it")
    p.add_argument("--sync-id", help="Idempotency token; an existing id is reported, not re-run")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("sync-logs", help="Show recent catalog sync runs")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_sync_logs)

    p = sub.add_parser("sync-settings", help="Show or change catalog sync settings")
    toggle = p.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enable", action="store_const", const=True)
    toggle.add_argument("--disable", dest="enable", action="store_const", const=False)
    p.add_argument("--frequency", type=int, metavar="HOURS")
    p.set_defaults(func=cmd_sync_settings, enable=None)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
