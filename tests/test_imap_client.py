import email
import imaplib
from dataclasses import replace

import pytest

from mailsync.models import Account, AuthType, FolderKind, Provider
from mailsync.network.imap_client import (
    ImapFetcher,
    derive_thread_id,
    parse_list_item,
    parse_raw_message,
    quote_mailbox,
)
from mailsync.utils.errors import (
    AuthExpiredError,
    AuthFailedError,
    ParseFailureError,
    RemoteUnavailableError,
)


RAW_MESSAGE = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: u@x.com\r\n"
    b"Subject: =?utf-8?q?Caf=C3=A9?=\r\n"
    b"Date: Tue, 02 Jan 2024 08:30:00 +0100\r\n"
    b"Message-ID: <m1@example.com>\r\n"
    b"\r\n"
    b"hello there\r\n"
)


class FakeImap:
    """Scripted stand-in for an imaplib.IMAP4 session."""

    def __init__(self, server):
        self.server = server
        self.capabilities = server.capabilities
        self.logged_out = False

    def authenticate(self, mechanism, authobject):
        token = authobject(b"").decode("utf-8")
        self.server.auth_attempts.append(token)
        if self.server.rejected_tokens and any(t in token for t in self.server.rejected_tokens):
            raise imaplib.IMAP4.error("AUTHENTICATE failed")
        return "OK", [b"Success"]

    def login(self, user, password):
        self.server.logins.append((user, password))
        if password != self.server.password:
            raise imaplib.IMAP4.error("LOGIN failed")
        return "OK", [b"Logged in"]

    def list(self):
        return "OK", self.server.mailboxes

    def select(self, mailbox, readonly=False):
        self.server.selects.append(mailbox)
        return "OK", [b"3"]

    def uid(self, command, *args):
        if command == "SEARCH":
            return "OK", [b" ".join(self.server.messages)]
        uid = args[0]
        self.server.fetch_queries.append(args[1])
        failure = self.server.fetch_failures.pop(uid, None)
        if failure is not None:
            raise failure
        raw = self.server.messages[uid.encode("ascii")]
        if raw is None:
            return "OK", [None]
        meta = f"1 (UID {uid} FLAGS (\\Seen \\Flagged)".encode("ascii")
        if "X-GM-EXT-1" in self.capabilities:
            meta += f" X-GM-THRID 777 X-GM-MSGID 9{uid}".encode("ascii")
        meta += b" RFC822 {%d}" % len(raw)
        return "OK", [(meta, raw), b")"]

    def logout(self):
        self.logged_out = True
        return "BYE", []


class FakeServer:
    def __init__(self, capabilities=("IMAP4REV1",), password="secret", rejected_tokens=()):
        self.capabilities = capabilities
        self.password = password
        self.rejected_tokens = list(rejected_tokens)
        self.mailboxes = []
        self.messages = {}
        self.fetch_failures = {}
        self.auth_attempts = []
        self.logins = []
        self.selects = []
        self.fetch_queries = []
        self.connections = []

    def factory(self, host, port, timeout):
        conn = FakeImap(self)
        self.connections.append((host, port, conn))
        return conn


class DummyRefresher:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    def refresh(self, account):
        self.calls += 1
        if self.error:
            raise self.error
        return replace(account, access_token=f"access-{self.calls + 1}")


def _account(**kwargs):
    kwargs.setdefault("auth_type", AuthType.OAUTH)
    kwargs.setdefault("access_token", "access-1")
    return Account(
        id=3,
        email_address="u@example.org",
        provider=Provider.IMAP,
        refresh_token="refresh-1",
        imap_host="imap.example.org",
        imap_port=993,
        **kwargs,
    )


@pytest.mark.parametrize(
    "line, expected",
    [
        (b'(\\HasNoChildren) "/" "INBOX"', ("INBOX", "Inbox", FolderKind.INBOX)),
        (b'(\\HasNoChildren) "/" INBOX', ("INBOX", "Inbox", FolderKind.INBOX)),
        (b'(\\HasNoChildren \\Sent) "/" "[Gmail]/Sent Mail"', ("[Gmail]/Sent Mail", "Sent", FolderKind.SENT)),
        (b'(\\HasNoChildren \\All) "/" "[Gmail]/All Mail"', ("[Gmail]/All Mail", "All Mail", FolderKind.ARCHIVE)),
        (b'(\\HasNoChildren) "." "Junk"', ("Junk", "Junk", FolderKind.SPAM)),
        (b'(\\HasNoChildren) "/" "Deleted Items"', ("Deleted Items", "Deleted Items", FolderKind.TRASH)),
        (b'(\\HasNoChildren) "/" "Work/Clients"', ("Work/Clients", "Clients", FolderKind.CUSTOM)),
        (b'(\\HasNoChildren) NIL "Notes"', ("Notes", "Notes", FolderKind.CUSTOM)),
    ],
)
def test_parse_list_item(line, expected):
    assert parse_list_item(line) == expected


def test_parse_list_item_skips_containers_and_garbage():
    assert parse_list_item(b'(\\HasChildren \\Noselect) "/" "[Gmail]"') is None
    assert parse_list_item(b"garbage") is None
    assert parse_list_item(b"") is None


def test_parse_list_item_handles_literal_names():
    assert parse_list_item((b'(\\HasNoChildren) "/" {7}', b"Reports")) == (
        "Reports", "Reports", FolderKind.CUSTOM,
    )


def test_quote_mailbox():
    assert quote_mailbox("INBOX") == "INBOX"
    assert quote_mailbox("[Gmail]/Sent Mail") == '"[Gmail]/Sent Mail"'
    assert quote_mailbox('"Already"') == '"Already"'


def test_derive_thread_id_preference_order():
    msg = email.message_from_bytes(
        b"Message-ID: <own@x>\r\nReferences: <root@x> <mid@x>\r\nIn-Reply-To: <parent@x>\r\n\r\nbody"
    )
    assert derive_thread_id(msg, "999") == "999"
    assert derive_thread_id(msg) == "<parent@x>"

    del msg["In-Reply-To"]
    assert derive_thread_id(msg) == "<root@x>"

    del msg["References"]
    assert derive_thread_id(msg) == "<own@x>"

    del msg["Message-ID"]
    assert derive_thread_id(msg).startswith("thread-")


def test_parse_raw_message_normalizes_fields():
    draft = parse_raw_message(RAW_MESSAGE, account_id=3, uid="INBOX:1", flags={"\\Seen"})

    assert draft.subject == "Café"
    assert draft.sender == "Alice <alice@example.com>"
    assert draft.body_text.strip() == "hello there"
    assert draft.thread_id == "<m1@example.com>"
    assert draft.is_read is True
    assert draft.is_flagged is False
    assert draft.date.utcoffset().total_seconds() == 3600
    assert draft.size_bytes == len(RAW_MESSAGE)


def test_parse_raw_message_collects_attachments():
    raw = (
        b"From: a@x\r\nSubject: files\r\nMIME-Version: 1.0\r\n"
        b'Content-Type: multipart/mixed; boundary="b"\r\n\r\n'
        b"--b\r\nContent-Type: text/plain\r\n\r\nsee attached\r\n"
        b'--b\r\nContent-Type: text/csv\r\nContent-Disposition: attachment; filename="data.csv"\r\n\r\n'
        b"a,b\r\n1,2\r\n"
        b"--b--\r\n"
    )
    draft = parse_raw_message(raw, account_id=3, uid="u1")

    assert draft.body_text.strip() == "see attached"
    assert [(a.filename, a.content_type) for a in draft.attachments] == [("data.csv", "text/csv")]


def test_parse_raw_message_rejects_empty_payload():
    with pytest.raises(ParseFailureError):
        parse_raw_message(b"", account_id=3, uid="u1")


def test_discover_folders_over_xoauth2():
    server = FakeServer()
    server.mailboxes = [
        b'(\\HasNoChildren) "/" "INBOX"',
        b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
        b'(\\HasNoChildren \\Trash) "/" "[Gmail]/Trash"',
    ]

    with ImapFetcher(_account(), imap_factory=server.factory) as fetcher:
        folders = fetcher.discover_folders()

    assert [(f.path, f.kind) for f in folders] == [("INBOX", FolderKind.INBOX), ("[Gmail]/Trash", FolderKind.TRASH)]
    assert server.auth_attempts == ["user=u@example.org\x01auth=Bearer access-1\x01\x01"]
    assert server.connections[0][0:2] == ("imap.example.org", 993)
    assert server.connections[0][2].logged_out is True


def test_rejected_token_is_refreshed_once_and_reconnects():
    server = FakeServer(rejected_tokens=["access-1"])
    server.mailboxes = [b'(\\HasNoChildren) "/" "INBOX"']
    refresher = DummyRefresher()

    fetcher = ImapFetcher(_account(), refresher, imap_factory=server.factory)
    folders = fetcher.discover_folders()

    assert [f.path for f in folders] == ["INBOX"]
    assert refresher.calls == 1
    assert len(server.connections) == 2
    assert "Bearer access-2" in server.auth_attempts[-1]


def test_second_rejection_is_auth_failure():
    server = FakeServer(rejected_tokens=["access-"])
    refresher = DummyRefresher()

    with pytest.raises(AuthFailedError) as excinfo:
        ImapFetcher(_account(), refresher, imap_factory=server.factory).discover_folders()

    assert isinstance(excinfo.value.__cause__, AuthExpiredError)
    assert refresher.calls == 1
    assert len(server.auth_attempts) == 2


def test_password_account_uses_login_without_refresh():
    server = FakeServer(password="secret")
    server.mailboxes = [b'(\\HasNoChildren) "/" "INBOX"']
    account = _account(auth_type=AuthType.PASSWORD, access_token="secret")

    ImapFetcher(account, DummyRefresher(), imap_factory=server.factory).discover_folders()

    assert server.logins == [("u@example.org", "secret")]
    assert server.auth_attempts == []


def test_wrong_password_is_auth_failure_without_refresh():
    server = FakeServer(password="secret")
    refresher = DummyRefresher()
    account = _account(auth_type=AuthType.PASSWORD, access_token="wrong")

    with pytest.raises(AuthFailedError):
        ImapFetcher(account, refresher, imap_factory=server.factory).discover_folders()

    assert refresher.calls == 0


def test_missing_host_is_remote_unavailable():
    account = replace(_account(), imap_host="")

    with pytest.raises(RemoteUnavailableError):
        ImapFetcher(account, imap_factory=FakeServer().factory).discover_folders()


def test_list_message_ids_returns_newest_first():
    server = FakeServer()
    server.messages = {b"1": RAW_MESSAGE, b"2": RAW_MESSAGE, b"3": RAW_MESSAGE}
    fetcher = ImapFetcher(_account(), imap_factory=server.factory)

    assert fetcher.list_message_ids("INBOX", 2) == ["3", "2"]
    assert fetcher.list_message_ids("INBOX", 0) == []
    assert server.selects == ["INBOX"]


def test_fetch_message_builds_path_scoped_uid():
    server = FakeServer()
    server.messages = {b"7": RAW_MESSAGE}
    fetcher = ImapFetcher(_account(), imap_factory=server.factory)

    draft = fetcher.fetch_message("7", "INBOX")

    assert draft.uid == "INBOX:7"
    assert draft.is_read is True
    assert draft.is_flagged is True
    assert server.fetch_queries == ["(RFC822 FLAGS)"]


def test_fetch_message_uses_gmail_extensions_when_offered():
    server = FakeServer(capabilities=("IMAP4REV1", "X-GM-EXT-1"))
    server.messages = {b"7": RAW_MESSAGE}
    fetcher = ImapFetcher(_account(), imap_factory=server.factory)

    draft = fetcher.fetch_message("7", "INBOX")

    assert draft.uid == "97"
    assert draft.thread_id == "777"
    assert server.fetch_queries == ["(RFC822 FLAGS X-GM-THRID X-GM-MSGID)"]


def test_iter_messages_skips_empty_and_reconnects_after_abort():
    server = FakeServer()
    server.messages = {b"1": RAW_MESSAGE, b"2": None, b"3": RAW_MESSAGE}
    server.fetch_failures = {"3": imaplib.IMAP4.abort("socket closed")}
    fetcher = ImapFetcher(_account(), imap_factory=server.factory)

    first = [d.uid for d in fetcher.iter_messages("INBOX", 10)]
    assert first == ["INBOX:1"]
    assert len(server.connections) == 2
    assert server.connections[0][2].logged_out is True
    assert server.connections[1][2].logged_out is False

    second = [d.uid for d in fetcher.iter_messages("INBOX", 10)]
    assert second == ["INBOX:3", "INBOX:1"]
    assert len(server.connections) == 2
