"""Command-line entry point for Gmail Mirror."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.core.auth import (
    FileTokenProvider,
    authenticate,
    build_gmail_service,
    token_path_for,
)
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import SyncResult
from gmail_mirror.mailbox import MailboxService
from gmail_mirror.storage.repository import MailRepository
from gmail_mirror.sync.coordinator import LockPolicy, SyncCoordinator, describe_result
from gmail_mirror.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Mirror - keep a bounded local copy of Gmail mailboxes"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    add_parser = subparsers.add_parser("add-account", help="Sign in and register an account")
    add_parser.add_argument("email", help="Address of the Gmail account")

    subparsers.add_parser("accounts", help="List registered accounts")

    for name, help_text in (
        ("enable", "Include an account in sync cycles"),
        ("disable", "Exclude an account from sync cycles"),
        ("remove-account", "Delete an account and all of its local data"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("account_id")

    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument("--account", "-a", help="Only sync this account")

    run_parser = subparsers.add_parser("run", help="Sync on a timer until interrupted")
    run_parser.add_argument(
        "--interval",
        type=_positive_float,
        default=None,
        help="Seconds between cycles (default: from settings)",
    )

    subparsers.add_parser("status", help="Show sync state per account")

    retry_parser = subparsers.add_parser(
        "retry-failed", help="Forget recorded message failures so they are fetched again"
    )
    retry_parser.add_argument("--account", "-a", required=True)

    labels_parser = subparsers.add_parser("labels", help="List stored labels")
    labels_parser.add_argument("--account", "-a", required=True)

    messages_parser = subparsers.add_parser("messages", help="List stored messages")
    messages_parser.add_argument("--account", "-a", required=True)
    messages_parser.add_argument("--query", "-q", help="Search subject, sender and snippet")
    messages_parser.add_argument("--label", "-l", help="Only messages with this label ID")
    messages_parser.add_argument("--unread", action="store_true", help="Only unread messages")
    messages_parser.add_argument("--limit", type=_positive_int, default=20)

    return parser


def build_coordinator(settings: GmailMirrorSettings) -> SyncCoordinator:
    """Wire the Gmail client, repositories and engines from settings."""
    client = GmailClient(
        FileTokenProvider(settings.token_dir),
        max_retries=settings.max_retries,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_cap_seconds=settings.backoff_cap_seconds,
        metadata_timeout_seconds=settings.metadata_timeout_seconds,
        bulk_timeout_seconds=settings.bulk_timeout_seconds,
        batch_size=settings.batch_size,
    )
    return SyncCoordinator(
        client,
        lambda: MailRepository(settings.database_path),
        max_concurrent_accounts=settings.max_concurrent_accounts,
        lock_policy=LockPolicy(settings.lock_policy),
        max_messages=settings.max_messages_per_account,
        page_size=settings.page_size,
        max_failure_attempts=settings.max_failure_attempts,
    )


def print_results(results: dict[str, SyncResult]) -> None:
    if not results:
        print("\nNo enabled accounts to sync")
        return
    print()
    for account_id, result in sorted(results.items()):
        print(f"  {account_id:40s} {type(result).__name__:20s} {describe_result(result)}")


def add_account(settings: GmailMirrorSettings, email: str) -> None:
    token_path = token_path_for(settings.token_dir, email)
    creds = authenticate(settings.credentials_path, token_path)
    profile = build_gmail_service(creds).users().getProfile(userId="me").execute()
    address = profile.get("emailAddress", email)
    if address.lower() != email.lower():
        logger.warning("Signed in as %s, expected %s", address, email)

    with MailRepository(settings.database_path) as repo:
        repo.add_account(email, address)
    print(f"\nAdded account {email} ({address})")


async def run_scheduler(coordinator: SyncCoordinator, interval: float) -> None:
    scheduler = SyncScheduler(coordinator, interval, run_immediately=True)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        coordinator.cancel_all()
        await scheduler.stop()


def show_status(settings: GmailMirrorSettings) -> None:
    with MailRepository(settings.database_path) as repo:
        accounts = repo.list_accounts()
        if not accounts:
            print("\nNo accounts registered")
            return
        print("\nAccount sync state:")
        for account in accounts:
            cursor = repo.load_cursor(account.account_id)
            last = account.last_sync_at.isoformat() if account.last_sync_at else "never"
            stuck = sum(1 for f in cursor.failures.values()
                        if f.attempts >= settings.max_failure_attempts)
            print(
                f"  {account.account_id:40s} "
                f"{'enabled' if account.is_enabled else 'disabled':9s} "
                f"status={cursor.status.value} messages={cursor.message_count} "
                f"failures={len(cursor.failures)} (skipped={stuck}) last_sync={last}"
            )
            if cursor.error_message:
                print(f"      last error: {cursor.error_message}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = GmailMirrorSettings()
    setup_logging(settings.log_level)
    settings.ensure_directories()

    try:
        if args.command == "add-account":
            add_account(settings, args.email)

        elif args.command == "accounts":
            with MailRepository(settings.database_path) as repo:
                accounts = repo.list_accounts()
            print(f"\nFound {len(accounts)} accounts:\n")
            for account in accounts:
                state = "enabled" if account.is_enabled else "disabled"
                print(f"  {account.account_id:40s} {account.email:40s} {state}")

        elif args.command in ("enable", "disable"):
            with MailRepository(settings.database_path) as repo:
                repo.set_account_enabled(args.account_id, args.command == "enable")
            print(f"\n{args.command.capitalize()}d {args.account_id}")

        elif args.command == "remove-account":
            with MailRepository(settings.database_path) as repo:
                removed = repo.remove_account(args.account_id)
            print(f"\n{'Removed' if removed else 'Unknown account'} {args.account_id}")

        elif args.command == "sync":
            coordinator = build_coordinator(settings)
            accounts = None
            if args.account:
                with MailRepository(settings.database_path) as repo:
                    account = repo.get_account(args.account)
                if account is None:
                    print(f"Error: unknown account {args.account}", file=sys.stderr)
                    sys.exit(1)
                accounts = [account]
            results = asyncio.run(coordinator.sync_all(accounts))
            print_results(results)

        elif args.command == "run":
            interval = args.interval or settings.sync_interval_seconds
            asyncio.run(run_scheduler(build_coordinator(settings), interval))

        elif args.command == "status":
            show_status(settings)

        elif args.command == "retry-failed":
            with MailRepository(settings.database_path) as repo:
                count = repo.clear_failures(args.account)
            print(f"\nCleared {count} failed messages; they will be fetched on the next sync")

        elif args.command == "labels":
            with MailRepository(settings.database_path) as repo:
                labels = MailboxService(repo).list_labels(args.account)
            print(f"\nFound {len(labels)} labels:\n")
            for label in labels:
                print(f"  {label.label_id:40s} {label.label_type.value:6s} {label.name}")

        elif args.command == "messages":
            with MailRepository(settings.database_path) as repo:
                mailbox = MailboxService(repo)
                if args.query:
                    messages = mailbox.search(args.account, args.query, limit=args.limit)
                else:
                    messages = mailbox.list_messages(
                        args.account,
                        label_id=args.label,
                        unread_only=args.unread,
                        limit=args.limit,
                    )
                unread = mailbox.unread_count(args.account)
            print(f"\n{len(messages)} messages ({unread} unread in store):\n")
            for message in messages:
                flag = " " if message.is_read else "*"
                print(
                    f" {flag} {message.date:%Y-%m-%d %H:%M}  {message.sender[:30]:30s}  "
                    f"{message.subject}"
                )

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
