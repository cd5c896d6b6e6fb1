"""
Common interface for remote mail fetchers.

A fetcher knows how to discover an account's folders and retrieve messages
from one provider family. The sync orchestrator only talks to this
interface, so strategies are interchangeable.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from typing import Iterator, List, Optional

from mailsync.models import Account, FolderKind, MessageDraft
from mailsync.utils.errors import ParseFailureError, RemoteUnavailableError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RemoteFolder:
    """A folder as reported by the provider."""
    path: str
    name: str
    kind: FolderKind = FolderKind.CUSTOM


class Fetcher(ABC):
    """
    Folder discovery and message retrieval against one provider.

    Fetchers return ``MessageDraft`` objects with ``account_id`` set and
    ``folder_id`` left at 0; the caller decides where they are stored.
    """

    def __init__(self, account: Account, refresher=None):
        """
        Args:
            account: The account to fetch for. Its access token is used for
                the lifetime of this fetcher only.
            refresher: TokenRefresher consulted once when the provider
                rejects the access token.
        """
        self.account = account
        self.refresher = refresher

    @abstractmethod
    def discover_folders(self) -> List[RemoteFolder]:
        pass

    @abstractmethod
    def list_message_ids(self, path: str, max_results: int) -> List[str]:
        """Provider ids of up to ``max_results`` messages in ``path``, newest first."""
        pass

    @abstractmethod
    def fetch_message(self, message_id: str, path: str) -> MessageDraft:
        """
        Retrieve and normalize one message.

        Raises:
            ParseFailureError: If the payload cannot be turned into a message.
            RemoteUnavailableError: On network failures.
            AuthFailedError: If credentials cannot be recovered.
        """
        pass

    def iter_messages(self, path: str, max_results: int) -> Iterator[MessageDraft]:
        """
        Yield the messages of one folder.

        The sequence is finite and restartable: every call lists the folder
        again. Messages that fail to download or parse are logged and
        skipped; credential failures propagate.
        """
        for message_id in self.list_message_ids(path, max_results):
            try:
                yield self.fetch_message(message_id, path)
            except (ParseFailureError, RemoteUnavailableError) as e:
                logger.warning(
                    "Skipping message %s in %s for %s: %s",
                    message_id, path, self.account.email_address, e,
                )

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into text."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value))).strip()
    except (UnicodeDecodeError, LookupError, ValueError):
        return str(value).strip()


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 Date header; naive results are taken to be UTC."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
