"""
Command surface for presentation layers.

``MailCommands`` is the narrow API that a UI (or the CLI) calls into. Every
command is request/response; long-running sync commands also publish a
``DataEvent`` to subscribers when they complete.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mailsync.models import Account, AccountDraft, ComposeDraft, Folder, Message
from mailsync.network.gmail_client import GmailRestFetcher
from mailsync.network.smtp_client import SmtpSender
from mailsync.utils.errors import AuthError, RemoteUnavailableError, SendError


logger = logging.getLogger(__name__)

ACCOUNT_DELETED = "account:deleted"
EMAILS_SYNCED = "emails:synced"
EMAILS_ALL_SYNCED = "emails:all-synced"
FOLDERS_REFRESHED = "folders:refreshed"


@dataclass
class DataEvent:
    """Notification published after a state-changing command."""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[DataEvent], None]
Sender = Callable[[Account, ComposeDraft], None]


class MailCommands:
    """
    Request/response commands over the store and the sync orchestrator.
    """

    def __init__(self, store, orchestrator, sender: Optional[Sender] = None):
        """
        Args:
            store: The MailStore.
            orchestrator: The SyncOrchestrator sharing the same store.
            sender: Optional ``(account, draft) -> None`` used by
                ``send_message``. Defaults to the REST API for REST accounts
                and SMTP for the rest.
        """
        self.store = store
        self.orchestrator = orchestrator
        self._sender = sender or self._default_send
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, **payload: Any) -> None:
        event = DataEvent(event_type, payload)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed handling %s", event_type)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_accounts(self) -> List[Account]:
        return self.store.list_accounts()

    def add_account(self, draft: AccountDraft) -> Account:
        return self.store.add_account(draft)

    def update_account(self, account: Account) -> Account:
        return self.store.update_account(account)

    def delete_account(self, account_id: int) -> bool:
        deleted = self.store.delete_account(account_id)
        if deleted:
            self._emit(ACCOUNT_DELETED, account_id=account_id)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_folders(self, account_id: int) -> List[Folder]:
        return self.store.list_folders(account_id)

    def list_messages(self, folder_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        return self.store.list_messages(folder_id, limit=limit, offset=offset).to_dict()

    def get_message(self, message_id: int) -> Optional[Message]:
        return self.store.get_message(message_id)

    def get_message_by_uid(self, account_id: int, uid: str) -> Optional[Message]:
        return self.store.get_message_by_uid(account_id, uid)

    def list_thread(self, thread_id: str) -> List[Message]:
        return self.store.get_messages_by_thread(thread_id)

    def search_messages(self, query: str, folder_id: Optional[int] = None, limit: int = 50) -> List[Message]:
        return self.store.search(query, folder_id=folder_id, limit=limit)

    def mark_read(self, message_id: int, is_read: bool = True) -> Message:
        return self.store.update_message_flags(message_id, is_read=is_read)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_folder(self, account_id: int, folder_id: int, cancel_event: Optional[threading.Event] = None) -> None:
        report = self.orchestrator.sync_folder(account_id, folder_id, cancel_event=cancel_event)
        self._emit(
            EMAILS_SYNCED,
            account_id=account_id,
            folder_id=folder_id,
            messages_added=report.messages_added,
        )

    def sync_all_folders(self, account_id: int, cancel_event: Optional[threading.Event] = None) -> None:
        report = self.orchestrator.sync_all_folders(account_id, cancel_event=cancel_event)
        self._emit(
            EMAILS_ALL_SYNCED,
            account_id=account_id,
            folders_synced=report.folders_synced,
            messages_added=report.messages_added,
            errors=list(report.errors),
        )

    def refresh_folders(self, account_id: int) -> None:
        folders = self.orchestrator.refresh_folders(account_id)
        self._emit(FOLDERS_REFRESHED, account_id=account_id, folder_count=len(folders))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_message(self, draft: ComposeDraft) -> bool:
        """
        Send a message from one of the stored accounts.

        Returns:
            True if the message was handed to the provider, False if sending
            failed (the failure is logged).

        Raises:
            NotFoundError: If the sending account doesn't exist.
        """
        account = self.store.require_account(draft.account_id)
        try:
            self._sender(account, draft)
        except (SendError, RemoteUnavailableError, AuthError) as e:
            logger.warning("Failed to send message from %s: %s", account.email_address, e)
            return False
        return True

    def _default_send(self, account: Account, draft: ComposeDraft) -> None:
        if account.is_rest:
            with GmailRestFetcher(account, self.orchestrator.refresher) as client:
                client.send_message(draft)
        else:
            SmtpSender(account).send(draft)
