"""
Command-line entry point for the mail sync engine.
"""
import argparse
import logging
import sys
import threading
from typing import List, Optional

from mailsync import config
from mailsync.auth.token_refresher import TokenRefresher
from mailsync.core.commands import DataEvent, MailCommands
from mailsync.core.sync_manager import SyncOrchestrator
from mailsync.models import AccountDraft, AuthType, Message, Provider
from mailsync.storage.encryption import TokenCipher
from mailsync.storage.mail_store import MailStore
from mailsync.utils.errors import MailSyncError, human_friendly_message
from mailsync.utils.logging_cfg import setup_logging


logger = logging.getLogger(__name__)


def build_commands(db_path: Optional[str] = None) -> MailCommands:
    """Wire a store, refresher, orchestrator and command surface together."""
    store = MailStore(db_path or config.SQLITE_DB_PATH, cipher=TokenCipher(key_path=config.SECRET_KEY_PATH))
    refresher = TokenRefresher(store)
    orchestrator = SyncOrchestrator(store, refresher)
    return MailCommands(store, orchestrator)


def _print_messages(messages: List[Message]) -> None:
    for msg in messages:
        marker = " " if msg.is_read else "*"
        flag = "!" if msg.is_flagged else " "
        date = msg.date.strftime('%Y-%m-%d %H:%M') if msg.date else "----------------"
        print(f"{marker}{flag} [{msg.id:>6}] {date}  {msg.sender[:30]:<30}  {msg.subject}")


def _print_event(event: DataEvent) -> None:
    print(f"-> {event.type}: {event.payload}")


def _run_cancellable(target, cancel: threading.Event) -> None:
    """Run a sync on a worker thread so Ctrl+C can cancel it between messages."""
    errors: List[BaseException] = []

    def worker() -> None:
        try:
            target()
        except BaseException as e:
            errors.append(e)

    thread = threading.Thread(target=worker, name="mailsync-sync", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(0.2)
    except KeyboardInterrupt:
        print("Cancelling after the current message...")
        cancel.set()
        thread.join()
    if errors:
        raise errors[0]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailsync",
        description="Local mail store and sync engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mailsync accounts
  mailsync add-account --email me@gmail.com --refresh-token TOKEN
  mailsync sync-all 1
  mailsync search 'is:unread from:"Alice"'
        """
    )
    parser.add_argument('--db', type=str, help='Path to the SQLite database')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init', help='Create the database schema')
    sub.add_parser('accounts', help='List accounts')

    add = sub.add_parser('add-account', help='Link a new account')
    add.add_argument('--email', required=True)
    add.add_argument('--name', default='')
    add.add_argument('--provider', choices=[p.value for p in Provider], default=Provider.REST_API.value)
    add.add_argument('--service', default='gmail', help='gmail, outlook, yahoo or custom')
    add.add_argument('--password', help='Use password authentication (IMAP accounts)')
    add.add_argument('--access-token')
    add.add_argument('--refresh-token')
    add.add_argument('--imap-host', default='')
    add.add_argument('--imap-port', type=int, default=0)
    add.add_argument('--smtp-host', default='')
    add.add_argument('--smtp-port', type=int, default=0)

    delete = sub.add_parser('delete-account', help='Delete an account and all of its mail')
    delete.add_argument('account_id', type=int)

    folders = sub.add_parser('folders', help='List folders of an account')
    folders.add_argument('account_id', type=int)

    messages = sub.add_parser('messages', help='List messages in a folder')
    messages.add_argument('folder_id', type=int)
    messages.add_argument('--limit', type=int, default=50)
    messages.add_argument('--offset', type=int, default=0)

    thread = sub.add_parser('thread', help='Show a conversation')
    thread.add_argument('thread_id')

    search = sub.add_parser('search', help='Search messages')
    search.add_argument('query')
    search.add_argument('--folder', type=int)
    search.add_argument('--limit', type=int, default=50)

    refresh = sub.add_parser('refresh-folders', help='Re-discover folders')
    refresh.add_argument('account_id', type=int)

    sync_folder = sub.add_parser('sync-folder', help='Sync one folder')
    sync_folder.add_argument('account_id', type=int)
    sync_folder.add_argument('folder_id', type=int)

    sync_all = sub.add_parser('sync-all', help='Sync every folder of an account')
    sync_all.add_argument('account_id', type=int)

    return parser


def _run(args: argparse.Namespace, commands: MailCommands) -> int:
    if args.command == 'init':
        print(f"Database ready: {commands.store.db_path}")
    elif args.command == 'accounts':
        for account in commands.list_accounts():
            print(f"[{account.id}] {account.email_address} ({account.provider.value}, {account.service})")
    elif args.command == 'add-account':
        draft = AccountDraft(
            display_name=args.name,
            email_address=args.email,
            provider=Provider(args.provider),
            service=args.service,
            auth_type=AuthType.PASSWORD if args.password else AuthType.OAUTH,
            access_token=args.password or args.access_token,
            refresh_token=args.refresh_token,
            imap_host=args.imap_host,
            imap_port=args.imap_port,
            smtp_host=args.smtp_host,
            smtp_port=args.smtp_port,
        )
        account = commands.add_account(draft)
        print(f"Added account {account.id}: {account.email_address}")
    elif args.command == 'delete-account':
        if commands.delete_account(args.account_id):
            print("Account deleted.")
        else:
            print("Account not found.")
            return 1
    elif args.command == 'folders':
        for folder in commands.list_folders(args.account_id):
            print(f"[{folder.id}] {folder.name:<24} {folder.kind.value:<8} "
                  f"{folder.unread_count}/{folder.total_count}  ({folder.path})")
    elif args.command == 'messages':
        page = commands.list_messages(args.folder_id, limit=args.limit, offset=args.offset)
        _print_messages(page["items"])
        print(f"{len(page['items'])} of {page['total']}")
    elif args.command == 'thread':
        _print_messages(commands.list_thread(args.thread_id))
    elif args.command == 'search':
        _print_messages(commands.search_messages(args.query, folder_id=args.folder, limit=args.limit))
    elif args.command in ('refresh-folders', 'sync-folder', 'sync-all'):
        commands.subscribe(_print_event)
        cancel = threading.Event()
        if args.command == 'refresh-folders':
            commands.refresh_folders(args.account_id)
        elif args.command == 'sync-folder':
            _run_cancellable(lambda: commands.sync_folder(args.account_id, args.folder_id, cancel_event=cancel), cancel)
        else:
            _run_cancellable(lambda: commands.sync_all_folders(args.account_id, cancel_event=cancel), cancel)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = _build_parser().parse_args(argv)

    config.load_env()
    setup_logging(debug=args.debug)

    try:
        commands = build_commands(args.db)
    except MailSyncError as e:
        print(f"✗ {human_friendly_message(e)}", file=sys.stderr)
        return 1

    try:
        return _run(args, commands)
    except (MailSyncError, ValueError) as e:
        logger.error("Command %s failed: %s", args.command, e)
        print(f"✗ {human_friendly_message(e)}", file=sys.stderr)
        return 1
    finally:
        commands.store.close()


if __name__ == "__main__":
    sys.exit(main())
