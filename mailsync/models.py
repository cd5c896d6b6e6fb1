"""
Core domain models for the mail store.

This module contains pure domain models (dataclasses) without any database
or network dependencies. Store rows, fetcher output and command inputs are
all expressed with these types.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List


class Provider(str, Enum):
    """Which remote strategy an account is synchronized with."""
    REST_API = "rest-api"
    IMAP = "imap-capable"


class AuthType(str, Enum):
    OAUTH = "oauth"
    PASSWORD = "password"


class FolderKind(str, Enum):
    """Well-known folder roles; anything else is custom."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"

    @property
    def is_system(self) -> bool:
        return self is not FolderKind.CUSTOM


@dataclass(slots=True)
class AccountDraft:
    """Fields supplied when linking a new account."""
    display_name: str = ""
    email_address: str = ""
    provider: Provider = Provider.REST_API
    service: str = "gmail"  # named OAuth provider: gmail, outlook, yahoo, custom
    auth_type: AuthType = AuthType.OAUTH
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    imap_host: str = ""
    imap_port: int = 0
    smtp_host: str = ""
    smtp_port: int = 0


@dataclass(slots=True)
class Account:
    """A linked mailbox identity with credentials and protocol endpoints."""
    id: Optional[int] = None
    display_name: str = ""
    email_address: str = ""
    provider: Provider = Provider.REST_API
    service: str = "gmail"
    auth_type: AuthType = AuthType.OAUTH
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    imap_host: str = ""
    imap_port: int = 993
    smtp_host: str = ""
    smtp_port: int = 587
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_rest(self) -> bool:
        return self.provider is Provider.REST_API


@dataclass(slots=True)
class FolderDraft:
    account_id: int = 0
    name: str = ""
    path: str = ""  # provider-native identifier (label id or mailbox path)
    kind: FolderKind = FolderKind.CUSTOM


@dataclass(slots=True)
class Folder:
    """A named view into an account's mail.

    ``unread_count`` and ``total_count`` are denormalized and only ever
    written by the store's recompute operation.
    """
    id: Optional[int] = None
    account_id: int = 0
    name: str = ""
    path: str = ""
    kind: FolderKind = FolderKind.CUSTOM
    unread_count: int = 0
    total_count: int = 0


@dataclass(slots=True)
class AttachmentDraft:
    filename: str = ""
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: Optional[str] = None
    file_path: Optional[str] = None


@dataclass(slots=True)
class Attachment:
    """Metadata for one binary part of a message."""
    id: Optional[int] = None
    message_id: int = 0
    filename: str = ""
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: Optional[str] = None
    file_path: Optional[str] = None


@dataclass(slots=True)
class MessageDraft:
    """A normalized message ready to be written to the store."""
    account_id: int = 0
    folder_id: int = 0
    uid: str = ""
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipients: str = ""
    cc: str = ""
    bcc: str = ""
    body_text: str = ""
    body_html: str = ""
    date: Optional[datetime] = None
    is_read: bool = False
    is_flagged: bool = False
    is_answered: bool = False
    is_forwarded: bool = False
    size_bytes: int = 0
    attachments: List[AttachmentDraft] = field(default_factory=list)
    # read/flag state set by the user rather than the server
    local_changes: bool = False


@dataclass(slots=True)
class Message:
    """One stored mail item."""
    id: Optional[int] = None
    account_id: int = 0
    folder_id: int = 0
    uid: str = ""
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipients: str = ""
    cc: str = ""
    bcc: str = ""
    body_text: str = ""
    body_html: str = ""
    date: Optional[datetime] = None
    is_read: bool = False
    is_flagged: bool = False
    is_answered: bool = False
    is_forwarded: bool = False
    size_bytes: int = 0
    created_at: Optional[datetime] = None
    has_attachments: bool = False


@dataclass(slots=True)
class MessagePage:
    """One page of a folder listing plus the folder's true row count."""
    items: List[Message] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict:
        return {"items": self.items, "total": self.total}


@dataclass(slots=True)
class ComposeDraft:
    """An outgoing message."""
    account_id: int = 0
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    in_reply_to: Optional[str] = None
