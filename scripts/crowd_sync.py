"""Operator CLI for the Crowd identity bridge.

This module serves as a CLI wrapper around crowd_auth services: it can
initialise the local store, run a login or cached lookup end to end, and
query the directory directly.
"""
from __future__ import annotations
import argparse
import getpass
import logging
import os
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from crowd_auth import audit
from crowd_auth.bootstrap import create_client, create_store, create_validator
from crowd_auth.config.settings import load_settings
from crowd_auth.core.crowd import CrowdDirectory, CrowdError
from crowd_auth.core.models import Credentials, NotFound, Rejected


def _print_user(user) -> None:
    print(f"id={user.id} key={user.crowd_key} username={user.username} email={user.email}")
    print(f"display_name={user.display_name!r} groups={','.join(sorted(user.groups)) or '-'}")


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Crowd identity bridge helper")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("init-db", help="Create local identity tables")

    sl = sub.add_parser("login", help="Authenticate and reconcile a user")
    sl.add_argument("--username", required=True)
    sl.add_argument("--password", default=os.environ.get("CROWD_AUTH_LOGIN_PASSWORD"))
    sl.add_argument("--ip", default="127.0.0.1", help="Source IP bound to the SSO session")

    sk = sub.add_parser("lookup", help="Cached lookup by local id")
    sk.add_argument("--id", type=int, required=True)

    so = sub.add_parser("logout", help="Invalidate an SSO token")
    so.add_argument("--token", required=True)

    se = sub.add_parser("exists", help="Check whether the directory knows a username")
    se.add_argument("--username", required=True)

    sg = sub.add_parser("groups", help="List direct directory groups of a user")
    sg.add_argument("--username", required=True)

    sub.add_parser("verify-audit", help="Verify audit log signatures")

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.cmd == "verify-audit":
        total, valid = audit.verify_audit_log()
        print(f"Audit log: {valid}/{total} events with valid signatures")
        sys.exit(0 if total == valid else 1)

    try:
        config = load_settings()
    except RuntimeError as e:
        print(f"[config] Error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.cmd == "init-db":
        create_store(config)
        print(f"[init-db] Tables ready at {config.database_url}", file=sys.stderr)
    elif args.cmd == "login":
        password = args.password or getpass.getpass(f"Password for {args.username}: ")
        validator = create_validator(config)
        outcome = validator.login_with_credentials(Credentials(args.username, password), args.ip)
        if isinstance(outcome, Rejected):
            print(f"[login] Rejected: {outcome.reason.value} {outcome.detail}", file=sys.stderr)
            sys.exit(1)
        _print_user(outcome.user)
        print(f"token={outcome.token}")
    elif args.cmd == "lookup":
        validator = create_validator(config)
        user = validator.lookup_by_local_id(args.id)
        if user is None:
            print(f"[lookup] No valid user for id={args.id}", file=sys.stderr)
            sys.exit(1)
        _print_user(user)
    elif args.cmd == "logout":
        validator = create_validator(config)
        if not validator.logout(args.token):
            print("[logout] Directory did not confirm invalidation; local state cleared", file=sys.stderr)
    elif args.cmd in ("exists", "groups"):
        directory = CrowdDirectory(create_client(config))
        try:
            if args.cmd == "exists":
                found = directory.user_exists(args.username)
                print("yes" if found else "no")
                sys.exit(0 if found else 1)
            groups = directory.fetch_groups(args.username)
        except CrowdError as e:
            print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
            sys.exit(1)
        if isinstance(groups, NotFound):
            print(f"[groups] Directory answered {groups.status_code}", file=sys.stderr)
            sys.exit(1)
        for name in sorted(groups):
            print(name)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
