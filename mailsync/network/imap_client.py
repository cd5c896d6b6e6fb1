"""
IMAP fetcher for providers without a REST API.

Opens one IMAP session per fetcher, lists mailboxes, and downloads messages
one at a time by UID. Parsing of raw messages is done with the standard
``email`` package.
"""
import email
import imaplib
import logging
import re
import uuid
from datetime import datetime, timezone
from email.message import Message as MimeMessage
from typing import List, Optional, Tuple

from mailsync import config
from mailsync.models import Account, AttachmentDraft, AuthType, FolderKind, MessageDraft
from mailsync.network.base import Fetcher, RemoteFolder, decode_header_value, parse_date
from mailsync.utils.errors import (
    AuthExpiredError,
    AuthFailedError,
    ParseFailureError,
    RemoteUnavailableError,
)


logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$')
_FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)')
_THRID_RE = re.compile(rb'X-GM-THRID (\d+)')
_MSGID_RE = re.compile(rb'X-GM-MSGID (\d+)')

# RFC 6154 special-use attributes
_SPECIAL_USE_KINDS = {
    "\\sent": FolderKind.SENT,
    "\\drafts": FolderKind.DRAFTS,
    "\\trash": FolderKind.TRASH,
    "\\junk": FolderKind.SPAM,
    "\\archive": FolderKind.ARCHIVE,
    "\\all": FolderKind.ARCHIVE,
}

# Fallback when the server doesn't advertise special-use attributes
_NAME_KINDS = {
    "sent": FolderKind.SENT,
    "sent mail": FolderKind.SENT,
    "sent items": FolderKind.SENT,
    "drafts": FolderKind.DRAFTS,
    "trash": FolderKind.TRASH,
    "deleted items": FolderKind.TRASH,
    "deleted messages": FolderKind.TRASH,
    "spam": FolderKind.SPAM,
    "junk": FolderKind.SPAM,
    "junk email": FolderKind.SPAM,
    "archive": FolderKind.ARCHIVE,
    "all mail": FolderKind.ARCHIVE,
}


def quote_mailbox(path: str) -> str:
    """Quote a mailbox name for IMAP commands when it isn't a plain atom."""
    if not path or (path.startswith('"') and path.endswith('"')):
        return path
    if re.search(r'[\s"\\\[\]()%*{]', path) or '/' in path:
        escaped = path.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return path


def parse_list_item(line) -> Optional[Tuple[str, str, FolderKind]]:
    """
    Parse one LIST response line into (path, display name, kind).

    Returns:
        None for unparseable lines and for ``\\Noselect`` containers.
    """
    if isinstance(line, tuple):
        # literal mailbox name: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
        line = line[0].rsplit(b' ', 1)[0] + b' "' + line[1] + b'"'
    if isinstance(line, bytes):
        line = line.decode('utf-8', errors='replace')
    if not line:
        return None

    match = _LIST_RE.match(line.strip())
    if not match:
        return None

    flags = {flag.lower() for flag in match.group('flags').split()}
    if '\\noselect' in flags or '\\nonexistent' in flags:
        return None

    delimiter = match.group('delim')
    delimiter = None if delimiter == 'NIL' else delimiter[1:-1].replace('\\\\', '\\')

    path = match.group('name').strip()
    if path.startswith('"') and path.endswith('"'):
        path = path[1:-1].replace('\\"', '"').replace('\\\\', '\\')

    leaf = path.rsplit(delimiter, 1)[-1] if delimiter else path

    if path.upper() == 'INBOX':
        return path, 'Inbox', FolderKind.INBOX

    kind = FolderKind.CUSTOM
    for flag in flags:
        if flag in _SPECIAL_USE_KINDS:
            kind = _SPECIAL_USE_KINDS[flag]
            break
    else:
        kind = _NAME_KINDS.get(leaf.lower(), FolderKind.CUSTOM)

    name = leaf
    if kind is FolderKind.SENT:
        name = 'Sent'
    elif kind is FolderKind.ARCHIVE and leaf.lower() == 'all mail':
        name = 'All Mail'
    return path, name, kind


def derive_thread_id(msg: MimeMessage, provider_thread_id: Optional[str] = None) -> str:
    """
    Conversation id for a raw message.

    Preference order: provider thread id, In-Reply-To, first References
    entry, the message's own Message-Id, then a generated placeholder.
    """
    if provider_thread_id:
        return provider_thread_id
    in_reply_to = (msg.get('In-Reply-To') or '').strip()
    if in_reply_to:
        return in_reply_to.split()[0]
    references = (msg.get('References') or '').split()
    if references:
        return references[0]
    message_id = (msg.get('Message-ID') or '').strip()
    if message_id:
        return message_id
    return f"thread-{uuid.uuid4().hex}"


def _decode_part(part: MimeMessage) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ''
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def _extract_bodies(msg: MimeMessage) -> Tuple[str, str, List[AttachmentDraft]]:
    body_text = ''
    body_html = ''
    attachments: List[AttachmentDraft] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = (part.get('Content-Disposition') or '').lower()
        filename = part.get_filename()

        if filename or disposition.startswith('attachment'):
            payload = part.get_payload(decode=True) or b''
            attachments.append(
                AttachmentDraft(
                    filename=decode_header_value(filename) or 'attachment',
                    content_type=content_type,
                    size=len(payload),
                    content_id=(part.get('Content-ID') or '').strip('<> ') or None,
                )
            )
        elif content_type == 'text/plain' and not body_text:
            body_text = _decode_part(part)
        elif content_type == 'text/html' and not body_html:
            body_html = _decode_part(part)

    return body_text, body_html, attachments


def parse_raw_message(
    raw: bytes,
    account_id: int,
    uid: str,
    flags: Optional[set] = None,
    provider_thread_id: Optional[str] = None,
) -> MessageDraft:
    """
    Normalize a raw RFC 822 message.

    Raises:
        ParseFailureError: If the payload has no headers at all.
    """
    if not raw:
        raise ParseFailureError(f"Message {uid} has an empty body")
    msg = email.message_from_bytes(raw)
    if not msg.keys():
        raise ParseFailureError(f"Message {uid} has no headers")

    flags = {flag.lower() for flag in (flags or set())}
    body_text, body_html, attachments = _extract_bodies(msg)

    return MessageDraft(
        account_id=account_id,
        uid=uid,
        thread_id=derive_thread_id(msg, provider_thread_id),
        subject=decode_header_value(msg.get('Subject')),
        sender=decode_header_value(msg.get('From')),
        recipients=decode_header_value(msg.get('To')),
        cc=decode_header_value(msg.get('Cc')),
        bcc=decode_header_value(msg.get('Bcc')),
        body_text=body_text,
        body_html=body_html,
        date=parse_date(msg.get('Date')) or datetime.now(timezone.utc),
        is_read='\\seen' in flags,
        is_flagged='\\flagged' in flags,
        is_answered='\\answered' in flags,
        is_forwarded='$forwarded' in flags,
        size_bytes=len(raw),
        attachments=attachments,
    )


class ImapFetcher(Fetcher):
    """
    Fetcher for IMAP accounts.

    OAuth accounts authenticate with XOAUTH2 and get one token refresh plus
    reconnect if the server rejects the token. Password accounts use LOGIN
    with the password kept in the account's access-token field.
    """

    def __init__(self, account: Account, refresher=None, imap_factory=None, timeout: Optional[float] = None):
        """
        Args:
            account: The account to fetch for.
            refresher: TokenRefresher for OAuth accounts.
            imap_factory: Callable ``(host, port, timeout) -> IMAP4``;
                defaults to ``imaplib.IMAP4_SSL``.
            timeout: Socket timeout in seconds.
        """
        super().__init__(account, refresher)
        self.timeout = timeout or config.IMAP_TIMEOUT_SECONDS
        self._imap_factory = imap_factory or (
            lambda host, port, timeout: imaplib.IMAP4_SSL(host, port, timeout=timeout)
        )
        self.connection = None
        self._selected: Optional[str] = None

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def _build_xoauth2_bytes(self) -> bytes:
        """Raw XOAUTH2 string; imaplib base64-encodes it."""
        email_address = self.account.email_address.strip()
        return f"user={email_address}\x01auth=Bearer {self.account.access_token or ''}\x01\x01".encode('utf-8')

    def _open(self):
        host = self.account.imap_host
        port = self.account.imap_port or config.DEFAULT_IMAP_PORT
        if not host:
            raise RemoteUnavailableError(f"No IMAP host configured for {self.account.email_address}")
        try:
            return self._imap_factory(host, port, self.timeout)
        except (OSError, imaplib.IMAP4.error) as e:
            raise RemoteUnavailableError(f"Failed to connect to IMAP server {host}:{port}: {e}") from e

    def _authenticate(self, conn) -> None:
        if self.account.auth_type is AuthType.PASSWORD:
            try:
                conn.login(self.account.email_address, self.account.access_token or '')
            except imaplib.IMAP4.error as e:
                raise AuthFailedError(f"IMAP login rejected for {self.account.email_address}: {e}") from e
            return
        auth_bytes = self._build_xoauth2_bytes()
        try:
            conn.authenticate('XOAUTH2', lambda challenge: auth_bytes)
        except imaplib.IMAP4.error as e:
            raise AuthExpiredError(f"IMAP rejected the access token for {self.account.email_address}: {e}") from e

    def _connect(self) -> None:
        """Open and authenticate a session, refreshing the token at most once."""
        auth_retried = False
        while True:
            conn = self._open()
            try:
                self._authenticate(conn)
            except AuthExpiredError as e:
                self._logout_quietly(conn)
                if auth_retried or self.refresher is None:
                    raise AuthFailedError(
                        f"IMAP authentication failed for {self.account.email_address}: {e}"
                    ) from e
                auth_retried = True
                logger.info("IMAP rejected token for %s, refreshing", self.account.email_address)
                self.account = self.refresher.refresh(self.account)
                continue
            except AuthFailedError:
                self._logout_quietly(conn)
                raise
            except OSError as e:
                self._logout_quietly(conn)
                raise RemoteUnavailableError(f"IMAP connection dropped during login: {e}") from e

            self.connection = conn
            self._selected = None
            logger.info("IMAP session opened for %s", self.account.email_address)
            return

    def _ensure_connected(self):
        if self.connection is None:
            self._connect()
        return self.connection

    def _drop_connection(self) -> None:
        if self.connection is not None:
            self._logout_quietly(self.connection)
        self.connection = None
        self._selected = None

    @staticmethod
    def _logout_quietly(conn) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    def _select(self, path: str):
        conn = self._ensure_connected()
        if self._selected == path:
            return conn
        try:
            typ, data = conn.select(quote_mailbox(path), readonly=True)
        except imaplib.IMAP4.abort as e:
            self._drop_connection()
            raise RemoteUnavailableError(f"IMAP connection lost selecting {path}: {e}") from e
        except (imaplib.IMAP4.error, OSError) as e:
            self._drop_connection()
            raise RemoteUnavailableError(f"Cannot select mailbox {path}: {e}") from e
        if typ != 'OK':
            raise RemoteUnavailableError(f"Cannot select mailbox {path}: {data}")
        self._selected = path
        return conn

    @property
    def _has_gmail_extensions(self) -> bool:
        capabilities = getattr(self.connection, 'capabilities', ()) or ()
        return 'X-GM-EXT-1' in capabilities

    def close(self) -> None:
        self._drop_connection()

    # ------------------------------------------------------------------
    # Fetcher interface
    # ------------------------------------------------------------------

    def discover_folders(self) -> List[RemoteFolder]:
        conn = self._ensure_connected()
        try:
            typ, data = conn.list()
        except (imaplib.IMAP4.error, OSError) as e:
            self._drop_connection()
            raise RemoteUnavailableError(f"Error listing mailboxes: {e}") from e
        if typ != 'OK':
            raise RemoteUnavailableError(f"Failed to list mailboxes: {typ}")

        folders = []
        for line in data or []:
            parsed = parse_list_item(line)
            if parsed is None:
                continue
            path, name, kind = parsed
            folders.append(RemoteFolder(path, name, kind))
        logger.info("Discovered %d mailboxes for %s", len(folders), self.account.email_address)
        return folders

    def list_message_ids(self, path: str, max_results: int) -> List[str]:
        """UIDs of the newest ``max_results`` messages in ``path``, newest first."""
        conn = self._select(path)
        try:
            typ, data = conn.uid('SEARCH', None, 'ALL')
        except (imaplib.IMAP4.error, OSError) as e:
            self._drop_connection()
            raise RemoteUnavailableError(f"UID SEARCH failed in {path}: {e}") from e
        if typ != 'OK':
            raise RemoteUnavailableError(f"UID SEARCH failed in {path}: {data}")

        uids = [uid.decode('ascii') for uid in (data[0] or b'').split()] if data else []
        if max_results <= 0:
            return []
        return uids[-max_results:][::-1]

    def fetch_message(self, message_id: str, path: str) -> MessageDraft:
        conn = self._select(path)
        query = '(RFC822 FLAGS X-GM-THRID X-GM-MSGID)' if self._has_gmail_extensions else '(RFC822 FLAGS)'
        try:
            typ, data = conn.uid('FETCH', message_id, query)
        except (imaplib.IMAP4.abort, OSError) as e:
            # the session is unusable; the next message reconnects
            self._drop_connection()
            raise RemoteUnavailableError(f"Connection lost fetching UID {message_id}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise RemoteUnavailableError(f"FETCH failed for UID {message_id}: {e}") from e
        if typ != 'OK':
            raise RemoteUnavailableError(f"FETCH failed for UID {message_id}: {data}")

        metadata = b''
        raw = None
        for item in data or []:
            if isinstance(item, tuple):
                metadata += item[0] or b''
                if raw is None:
                    raw = item[1]
            elif isinstance(item, bytes):
                metadata += item
        if raw is None:
            raise ParseFailureError(f"No message body returned for UID {message_id} in {path}")

        flags_match = _FLAGS_RE.search(metadata)
        flags = set(flags_match.group(1).decode('ascii', errors='ignore').split()) if flags_match else set()
        thrid_match = _THRID_RE.search(metadata)
        msgid_match = _MSGID_RE.search(metadata)

        uid = msgid_match.group(1).decode('ascii') if msgid_match else f"{path}:{message_id}"
        thread_id = thrid_match.group(1).decode('ascii') if thrid_match else None

        return parse_raw_message(
            raw,
            account_id=self.account.id or 0,
            uid=uid,
            flags=flags,
            provider_thread_id=thread_id,
        )
