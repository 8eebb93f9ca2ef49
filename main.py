#!/usr/bin/env python3
"""
Main application entry point.

Headless driver for the sync core:

Usage:
    python main.py add-account --email me@gmx.de --provider gmx
    python main.py list-accounts
    python main.py test-connection ACCOUNT_ID
    python main.py sync ACCOUNT_ID [--debug]
    python main.py sync-all
"""
import argparse
import getpass
import sys
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from smartmail import config
from smartmail.core.session import SessionManager
from smartmail.core.sync_manager import SyncManager
from smartmail.models import Account, SyncResult
from smartmail.storage import cache_repo
from smartmail.storage.db import init_db
from smartmail.utils.errors import EmailClientError, human_friendly_message
from smartmail.utils.logging_cfg import get_logger, setup_logging


logger = get_logger(__name__)


def _print_progress(display_folder: str, new_in_folder: int, folder_index: int, folder_total: int) -> None:
    print(f"  [{folder_index}/{folder_total}] {display_folder}: {new_in_folder} new")


def _print_result(account: Account, result: SyncResult) -> None:
    if result.success:
        print(
            f"✓ {account.email}: {result.emails_synced} new emails "
            f"in {result.folders_synced} folders"
        )
    elif result.cancelled:
        print(f"- {account.email}: {result.error} ({result.emails_synced} emails saved)")
    else:
        print(f"✗ {account.email}: {result.error}")


def cmd_add_account(args: argparse.Namespace) -> int:
    preset = config.get_provider_preset(args.provider) or {}
    host = args.host or preset.get("host")
    if not host:
        print(f"Unknown provider '{args.provider}': --host is required", file=sys.stderr)
        return 2

    password = args.password or getpass.getpass(f"Password for {args.email}: ")
    account = Account(
        id=args.id or uuid.uuid4().hex[:12],
        name=args.name or args.email,
        email=args.email,
        provider=args.provider or "custom",
        imap_host=host,
        imap_port=args.port or preset.get("port") or config.DEFAULT_IMAP_PORT,
        security=args.security or preset.get("security") or "ssl",
        username=args.username or "",
        password=password,
    )
    cache_repo.add_account(account)
    print(f"Added account {account.id} ({account.email})")
    return 0


def cmd_list_accounts(args: argparse.Namespace) -> int:
    accounts = cache_repo.list_accounts()
    if not accounts:
        print("No accounts configured.")
        return 0
    for account in accounts:
        unread = cache_repo.get_unread_count(account.id)
        print(
            f"{account.id:<14} {account.email:<32} {account.imap_host}:{account.imap_port} "
            f"last uid {account.last_sync_uid}, {unread} unread, "
            f"{account.storage_used}/{account.storage_total} KB"
        )
    return 0


def cmd_test_connection(args: argparse.Namespace) -> int:
    account = cache_repo.get_account(args.account_id)
    result = SessionManager().test_connection(account)
    if result.success:
        print(f"✓ Connected to {account.imap_host} as {account.login_name}")
        return 0
    print(f"✗ {result.error}")
    return 1


def _sync_with_cancel(manager: SyncManager, accounts: List[Account], progress: bool) -> List[SyncResult]:
    """Sync accounts on a thread pool, one thread per account. Ctrl-C cancels."""
    cancel_event = threading.Event()
    callback = _print_progress if progress else None
    with ThreadPoolExecutor(max_workers=max(1, len(accounts)), thread_name_prefix="sync") as pool:
        futures = [
            pool.submit(manager.sync_account, account, cancel_event, callback)
            for account in accounts
        ]
        try:
            results = [future.result() for future in futures]
        except KeyboardInterrupt:
            print("\nCancelling after the current folder...")
            cancel_event.set()
            results = [future.result() for future in futures]
    for account, result in zip(accounts, results):
        _print_result(account, result)
    return results


def cmd_sync(args: argparse.Namespace) -> int:
    account = cache_repo.get_account(args.account_id)
    results = _sync_with_cancel(SyncManager(), [account], progress=True)
    return 0 if results[0].success else 1


def cmd_sync_all(args: argparse.Namespace) -> int:
    accounts = []
    for summary in cache_repo.list_accounts():
        try:
            accounts.append(cache_repo.get_account(summary.id))
        except EmailClientError as e:
            print(f"✗ {summary.email}: {human_friendly_message(e)}")
    if not accounts:
        print("No accounts to sync.")
        return 0
    results = _sync_with_cancel(SyncManager(), accounts, progress=False)
    return 0 if all(result.success for result in results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SmartMail IMAP sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging to the console")
    subparsers = parser.add_subparsers(dest="command")

    add = subparsers.add_parser("add-account", help="Store a new IMAP account")
    add.add_argument("--email", required=True)
    add.add_argument("--provider", default="custom", help=f"One of {', '.join(config.PROVIDERS)} or custom")
    add.add_argument("--host", help="IMAP host (required for custom providers)")
    add.add_argument("--port", type=int)
    add.add_argument("--security", choices=("ssl", "starttls", "plain"))
    add.add_argument("--username", help="Login name if it differs from the address")
    add.add_argument("--password", help="Prompted for when omitted")
    add.add_argument("--name")
    add.add_argument("--id")
    add.set_defaults(func=cmd_add_account)

    listing = subparsers.add_parser("list-accounts", help="Show stored accounts")
    listing.set_defaults(func=cmd_list_accounts)

    test = subparsers.add_parser("test-connection", help="Check that an account can log in")
    test.add_argument("account_id")
    test.set_defaults(func=cmd_test_connection)

    sync = subparsers.add_parser("sync", help="Sync one account")
    sync.add_argument("account_id")
    sync.add_argument(
        "--debug", action="store_true", default=argparse.SUPPRESS,
        help="Verbose logging to the console"
    )
    sync.set_defaults(func=cmd_sync)

    sync_all = subparsers.add_parser("sync-all", help="Sync every account in parallel")
    sync_all.set_defaults(func=cmd_sync_all)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    # Load environment variables and ensure directories exist
    config.load_env()

    # Initialize database schema
    init_db()

    setup_logging(debug=args.debug or config.DEBUG)

    try:
        return args.func(args)
    except EmailClientError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"✗ {human_friendly_message(e)}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
