#!/usr/bin/env python3
"""
SessionGate admin CLI -- account maintenance without going through the API.

Usage:
  python main.py create-account admin@example.com admin --full-name "Site Admin" --roles admin --verified
  python main.py list-accounts
  python main.py set-roles alice manager user
  python main.py close-account alice
  python main.py send-verification alice@example.com

The password for create-account is read with getpass (asked twice), never
from the command line, so it does not end up in shell history.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default: sessiongate_auth.db)
  SECRET_KEY    Required unless DEBUG=true; used to hash emailed link tokens.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError, ValidationFailed
from auth.ledger import VerificationLedger
from auth.mailer import mailer_from_settings
from auth.models import VerificationStatus
from auth.store import AccountStore
from auth.tokens import register


def _read_secret() -> Optional[tuple[str, str]]:
    """Prompt for the password twice. Returns None if input is aborted."""
    try:
        secret = getpass.getpass("  Password: ")
        confirm = getpass.getpass("  Repeat password: ")
    except (EOFError, KeyboardInterrupt):
        print()
        return None
    return secret, confirm


def cmd_create_account(store: AccountStore, args: argparse.Namespace) -> int:
    entered = _read_secret()
    if entered is None:
        return 1
    secret, confirm = entered
    try:
        account = register(
            store,
            email=args.email,
            username=args.username,
            full_name=args.full_name or args.username,
            secret=secret,
            secret_confirm=confirm,
            roles=args.roles,
        )
    except ValidationFailed as e:
        print(f"  [!] {e.field}: {e.message}")
        return 1
    if args.verified:
        store.set_status(account.id, VerificationStatus.VERIFIED)
    status = "verified" if args.verified else "unverified"
    print(f"  Created account {account.id} ({account.username}, {status}, roles: {', '.join(account.roles)})")
    return 0


def cmd_list_accounts(store: AccountStore, args: argparse.Namespace) -> int:
    accounts = store.list_accounts()
    if not accounts:
        print("  No accounts.")
        return 0
    for a in accounts:
        print(f"  {a.id:>4}  {a.username:<20} {a.email:<32} {a.verification_status.value:<10} {','.join(a.roles)}")
    return 0


def cmd_set_roles(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_username(args.username)
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    roles = [r.strip() for r in args.roles if r.strip()]
    if not roles:
        print("  [!] An account must hold at least one role.")
        return 1
    store.update_roles(account.id, roles)
    print(f"  {account.username}: roles set to {', '.join(roles)}")
    return 0


def cmd_close_account(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_username(args.username)
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    if account.is_closed:
        print(f"  {account.username} is already closed.")
        return 0
    if "admin" in account.roles and store.count_admins() <= 1:
        print("  [!] Refusing to close the last open admin account.")
        return 1
    store.set_status(account.id, VerificationStatus.CLOSED)
    print(f"  Closed {account.username}.")
    return 0


def cmd_send_verification(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account with email '{args.email}'.")
        return 1
    if account.verification_status != VerificationStatus.UNVERIFIED:
        print(f"  [!] {account.username} is {account.verification_status.value}; nothing to send.")
        return 1
    ledger = VerificationLedger(store, mailer_from_settings())
    try:
        ledger.issue(account.id)
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  Verification link issued for {account.username}.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Account maintenance for the SessionGate auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com admin --roles admin --verified
  python main.py set-roles alice manager user
  python main.py close-account alice
  DATABASE_URL=sqlite:///prod.db python main.py list-accounts
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-account", help="Create an account (password is prompted)")
    p.add_argument("email")
    p.add_argument("username")
    p.add_argument("--full-name", default=None, help="Display name (default: the username)")
    p.add_argument(
        "--roles",
        nargs="+",
        default=["user"],
        metavar="ROLE",
        help="One or more roles (default: user)",
    )
    p.add_argument(
        "--verified",
        action="store_true",
        help="Mark the account verified immediately (bootstrap admins, test users)",
    )
    p.set_defaults(func=cmd_create_account)

    p = sub.add_parser("list-accounts", help="List every account")
    p.set_defaults(func=cmd_list_accounts)

    p = sub.add_parser("set-roles", help="Replace an account's roles")
    p.add_argument("username")
    p.add_argument("roles", nargs="+", metavar="ROLE")
    p.set_defaults(func=cmd_set_roles)

    p = sub.add_parser("close-account", help="Close an account; it can no longer sign in")
    p.add_argument("username")
    p.set_defaults(func=cmd_close_account)

    p = sub.add_parser("send-verification", help="Issue and mail a fresh verification link")
    p.add_argument("email")
    p.set_defaults(func=cmd_send_verification)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    store = AccountStore(args.database_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
