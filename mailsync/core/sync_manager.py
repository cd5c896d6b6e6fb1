"""
Synchronization orchestrator.

This module drives one account's sync passes: it picks the fetcher for the
account's provider, makes sure folder rows exist, writes fetched messages
through the mail store and recomputes folder counts.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from mailsync import config
from mailsync.models import Account, Folder, FolderDraft, FolderKind, MessageDraft, Provider
from mailsync.network.base import Fetcher, RemoteFolder
from mailsync.network.gmail_client import DEFAULT_FOLDERS as REST_DEFAULT_FOLDERS
from mailsync.network.gmail_client import GmailRestFetcher
from mailsync.network.imap_client import ImapFetcher
from mailsync.utils.errors import (
    AuthFailedError,
    MailSyncError,
    NotFoundError,
    RemoteUnavailableError,
    SyncCancelledError,
    SyncError,
)


logger = logging.getLogger(__name__)

FetcherFactory = Callable[[Account, object], Fetcher]

DEFAULT_FETCHERS: Dict[Provider, FetcherFactory] = {
    Provider.REST_API: GmailRestFetcher,
    Provider.IMAP: ImapFetcher,
}

IMAP_DEFAULT_FOLDERS: List[RemoteFolder] = [RemoteFolder("INBOX", "Inbox", FolderKind.INBOX)]


class SyncState(str, Enum):
    IDLE = "idle"
    DISCOVERING_FOLDERS = "discovering-folders"
    FETCHING_FOLDER = "fetching-folder"
    NORMALIZING = "normalizing"
    RECOMPUTING_COUNTS = "recomputing-counts"
    FAILED = "failed"


@dataclass
class SyncReport:
    """Outcome of one sync pass."""
    account_id: int
    folders_synced: int = 0
    messages_added: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)  # (folder path, message)

    @property
    def ok(self) -> bool:
        return not self.errors


def folder_priority(folder: Folder) -> int:
    """Inbox first, then system folders, then custom ones."""
    if folder.kind is FolderKind.INBOX:
        return 0
    if folder.kind.is_system:
        return 1
    return 2


class SyncOrchestrator:
    """
    Runs sync passes for accounts against an injected mail store.

    Passes for one account are serialized; a second pass started while one
    is running fails immediately. Folders within a pass are processed
    sequentially.
    """

    def __init__(
        self,
        store,
        refresher,
        fetcher_factories: Optional[Dict[Provider, FetcherFactory]] = None,
        max_messages_per_folder: Optional[int] = None,
    ):
        """
        Args:
            store: The MailStore to write to.
            refresher: TokenRefresher handed to every fetcher.
            fetcher_factories: Provider to fetcher-factory mapping. Defaults
                to the REST and IMAP fetchers.
            max_messages_per_folder: Page size for one folder pass.
        """
        self.store = store
        self.refresher = refresher
        self.fetcher_factories = dict(fetcher_factories or DEFAULT_FETCHERS)
        self.max_messages_per_folder = max_messages_per_folder or config.MAX_MESSAGES_PER_FOLDER
        self._lock = threading.Lock()
        self._states: Dict[int, SyncState] = {}
        self._running: set = set()

    # ------------------------------------------------------------------
    # State tracking
    # ------------------------------------------------------------------

    def state(self, account_id: int) -> SyncState:
        with self._lock:
            return self._states.get(account_id, SyncState.IDLE)

    def _set_state(self, account_id: int, state: SyncState) -> None:
        with self._lock:
            self._states[account_id] = state
        logger.debug("Account %s sync state -> %s", account_id, state.value)

    def _begin(self, account_id: int) -> None:
        with self._lock:
            if account_id in self._running:
                raise SyncError(f"Sync already in progress for account {account_id}")
            self._running.add(account_id)

    def _end(self, account_id: int, failed: bool) -> None:
        with self._lock:
            self._running.discard(account_id)
            self._states[account_id] = SyncState.FAILED if failed else SyncState.IDLE

    def _fetcher_for(self, account: Account) -> Fetcher:
        factory = self.fetcher_factories.get(account.provider)
        if factory is None:
            raise SyncError(f"No fetcher registered for provider {account.provider}")
        return factory(account, self.refresher)

    # ------------------------------------------------------------------
    # Public passes
    # ------------------------------------------------------------------

    def sync_folder(
        self,
        account_id: int,
        folder_id: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncReport:
        """
        Fetch one folder and store new messages.

        Raises:
            NotFoundError: If the account or folder doesn't exist, or the
                folder belongs to another account.
            AuthFailedError: If credentials cannot be recovered.
            RemoteUnavailableError: If the folder cannot be listed.
            SyncCancelledError: If ``cancel_event`` is set mid-pass.
        """
        account = self.store.require_account(account_id)
        folder = self.store.get_folder(folder_id)
        if folder is None or folder.account_id != account_id:
            raise NotFoundError(f"Folder {folder_id} not found for account {account_id}")

        self._begin(account_id)
        failed = True
        report = SyncReport(account_id=account_id)
        try:
            with self._fetcher_for(account) as fetcher:
                try:
                    report.messages_added = self._sync_one(fetcher, account, folder, cancel_event)
                    report.folders_synced = 1
                finally:
                    self._set_state(account_id, SyncState.RECOMPUTING_COUNTS)
                    self.store.recompute_folder_counts(folder.id)
            failed = False
            logger.info(
                "Synced folder %s for %s: %d new messages",
                folder.path, account.email_address, report.messages_added,
            )
            return report
        finally:
            self._end(account_id, failed)

    def sync_all_folders(
        self,
        account_id: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncReport:
        """
        Full sync of every folder of an account.

        REST accounts have their messages cleared first so label changes
        between runs cannot leave stale copies; read/flag state the user
        changed locally is carried over by uid, everything else follows the
        server. Failures on one folder are recorded and the
        pass moves on. Counts are recomputed for every folder at the end.

        Raises:
            NotFoundError: If the account doesn't exist.
            AuthFailedError: Terminal; raised after counts are recomputed.
            SyncCancelledError: If ``cancel_event`` is set mid-pass.
            SyncError: If every folder failed.
        """
        account = self.store.require_account(account_id)

        self._begin(account_id)
        failed = True
        report = SyncReport(account_id=account_id)
        try:
            with self._fetcher_for(account) as fetcher:
                preserved: Dict[str, Dict[str, bool]] = {}
                if account.is_rest:
                    preserved = self.store.message_states(account_id)
                    self.store.clear_messages_for_account(account_id)

                self._set_state(account_id, SyncState.DISCOVERING_FOLDERS)
                try:
                    folders = self._discover(fetcher, account)
                except RemoteUnavailableError as e:
                    logger.warning(
                        "Folder discovery failed for %s, using default folders: %s",
                        account.email_address, e,
                    )
                    defaults = REST_DEFAULT_FOLDERS if account.is_rest else IMAP_DEFAULT_FOLDERS
                    folders = self._ensure_folders(account, defaults)

                first_error: Optional[BaseException] = None
                try:
                    for folder in sorted(folders, key=folder_priority):
                        try:
                            added = self._sync_one(fetcher, account, folder, cancel_event, preserved)
                        except (AuthFailedError, SyncCancelledError):
                            raise
                        except MailSyncError as e:
                            logger.warning(
                                "Error syncing folder %s for %s: %s",
                                folder.path, account.email_address, e,
                            )
                            report.errors.append((folder.path, str(e)))
                            first_error = first_error or e
                            continue
                        report.folders_synced += 1
                        report.messages_added += added
                finally:
                    self._set_state(account_id, SyncState.RECOMPUTING_COUNTS)
                    self.store.recompute_all_folder_counts(account_id)

            if folders and report.folders_synced == 0 and first_error is not None:
                raise SyncError(
                    f"All folders failed to sync for {account.email_address}: {first_error}",
                    cause=first_error,
                ) from first_error

            failed = False
            logger.info(
                "Full sync for %s finished: %d folders, %d new messages, %d errors",
                account.email_address, report.folders_synced,
                report.messages_added, len(report.errors),
            )
            return report
        finally:
            self._end(account_id, failed)

    def refresh_folders(self, account_id: int) -> List[Folder]:
        """
        Discovery-only pass: upsert folder rows without touching messages.

        Raises:
            NotFoundError: If the account doesn't exist.
            AuthFailedError, RemoteUnavailableError: From the provider.
        """
        account = self.store.require_account(account_id)
        self._begin(account_id)
        failed = True
        try:
            with self._fetcher_for(account) as fetcher:
                self._set_state(account_id, SyncState.DISCOVERING_FOLDERS)
                folders = self._discover(fetcher, account)
            failed = False
            return folders
        finally:
            self._end(account_id, failed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _discover(self, fetcher: Fetcher, account: Account) -> List[Folder]:
        return self._ensure_folders(account, fetcher.discover_folders())

    def _ensure_folders(self, account: Account, remote_folders: List[RemoteFolder]) -> List[Folder]:
        return [
            self.store.upsert_folder(
                FolderDraft(account_id=account.id, name=remote.name, path=remote.path, kind=remote.kind)
            )
            for remote in remote_folders
        ]

    def _sync_one(
        self,
        fetcher: Fetcher,
        account: Account,
        folder: Folder,
        cancel_event: Optional[threading.Event],
        preserved: Optional[Dict[str, Dict[str, bool]]] = None,
    ) -> int:
        """Fetch one folder and write its messages; returns how many were new."""
        self._set_state(account.id, SyncState.FETCHING_FOLDER)
        added = 0
        messages = fetcher.iter_messages(folder.path, self.max_messages_per_folder)
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelledError(
                        f"Sync of {folder.path} for {account.email_address} was cancelled"
                    )
                try:
                    draft = next(messages)
                except StopIteration:
                    break
                self._set_state(account.id, SyncState.NORMALIZING)
                if self._store_message(account, folder, draft, preserved):
                    added += 1
                self._set_state(account.id, SyncState.FETCHING_FOLDER)
        finally:
            messages.close()
        return added

    def _store_message(
        self,
        account: Account,
        folder: Folder,
        draft: MessageDraft,
        preserved: Optional[Dict[str, Dict[str, bool]]],
    ) -> bool:
        draft.account_id = account.id
        draft.folder_id = folder.id
        if preserved and draft.uid in preserved:
            state = preserved[draft.uid]
            draft.is_read = state["is_read"]
            draft.is_flagged = state["is_flagged"]
            draft.local_changes = True

        _, inserted = self.store.insert_message(draft)
        return inserted
