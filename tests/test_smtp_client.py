import base64
import email
import smtplib

import pytest

from mailsync.models import Account, AuthType, ComposeDraft, Provider
from mailsync.network.smtp_client import SmtpSender, build_mime_message, envelope_recipients
from mailsync.utils.errors import AuthFailedError, RemoteUnavailableError, SendError


class FakeSmtp:
    def __init__(self, host, port, timeout, auth_code=235, send_error=None, connect_error=None):
        if connect_error:
            raise connect_error
        self.host = host
        self.port = port
        self.commands = []
        self.auth_code = auth_code
        self.send_error = send_error
        self.sent = []
        self.quit_called = False

    def ehlo(self):
        self.commands.append("EHLO")

    def starttls(self):
        self.commands.append("STARTTLS")

    def login(self, user, password):
        self.commands.append(("LOGIN", user, password))
        if password != "secret":
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def docmd(self, cmd, args=""):
        self.commands.append((cmd, args))
        return self.auth_code, b"2.7.0 Accepted"

    def sendmail(self, from_addr, to_addrs, msg):
        if self.send_error:
            raise self.send_error
        self.sent.append((from_addr, to_addrs, msg))

    def quit(self):
        self.quit_called = True


def _account(**kwargs):
    kwargs.setdefault("auth_type", AuthType.OAUTH)
    kwargs.setdefault("access_token", "token-1")
    kwargs.setdefault("smtp_port", 587)
    return Account(
        id=1,
        display_name="Una User",
        email_address="u@example.org",
        provider=Provider.IMAP,
        smtp_host="smtp.example.org",
        **kwargs,
    )


def _sender(account, **fake_kwargs):
    connections = []

    def factory(host, port, timeout):
        conn = FakeSmtp(host, port, timeout, **fake_kwargs)
        connections.append(conn)
        return conn

    return SmtpSender(account, smtp_factory=factory), connections


DRAFT = ComposeDraft(
    account_id=1,
    to=["bob@example.com"],
    cc=["carol@example.com"],
    bcc=["hidden@example.com"],
    subject="Status",
    body_text="All good",
    body_html="<p>All good</p>",
    in_reply_to="<parent@example.com>",
)


def test_build_mime_message_headers():
    msg = email.message_from_string(build_mime_message(_account(), DRAFT).as_string())

    assert msg["From"] == "Una User <u@example.org>"
    assert msg["To"] == "bob@example.com"
    assert msg["Cc"] == "carol@example.com"
    assert msg["Bcc"] is None
    assert msg["In-Reply-To"] == "<parent@example.com>"
    assert msg["Message-ID"].endswith("@example.org>")
    assert [part.get_content_type() for part in msg.get_payload()] == ["text/plain", "text/html"]


def test_envelope_includes_bcc():
    assert envelope_recipients(DRAFT) == ["bob@example.com", "carol@example.com", "hidden@example.com"]


def test_send_over_starttls_with_xoauth2():
    sender, connections = _sender(_account())

    sender.send(DRAFT)

    conn = connections[0]
    assert (conn.host, conn.port) == ("smtp.example.org", 587)
    assert conn.commands[:3] == ["EHLO", "STARTTLS", "EHLO"]
    cmd, args = conn.commands[3]
    assert cmd == "AUTH"
    mechanism, encoded = args.split(" ", 1)
    assert mechanism == "XOAUTH2"
    assert base64.b64decode(encoded) == b"user=u@example.org\x01auth=Bearer token-1\x01\x01"
    from_addr, to_addrs, _ = conn.sent[0]
    assert from_addr == "u@example.org"
    assert "hidden@example.com" in to_addrs
    assert conn.quit_called


def test_implicit_tls_port_skips_starttls():
    sender, connections = _sender(_account(smtp_port=465))

    sender.send(DRAFT)

    assert "STARTTLS" not in connections[0].commands


def test_rejected_xoauth2_is_auth_failure():
    sender, connections = _sender(_account(), auth_code=535)

    with pytest.raises(AuthFailedError):
        sender.send(DRAFT)

    assert connections[0].sent == []
    assert connections[0].quit_called


def test_password_login():
    sender, connections = _sender(_account(auth_type=AuthType.PASSWORD, access_token="secret"))

    sender.send(DRAFT)

    assert ("LOGIN", "u@example.org", "secret") in connections[0].commands


def test_wrong_password_is_auth_failure():
    sender, _ = _sender(_account(auth_type=AuthType.PASSWORD, access_token="nope"))

    with pytest.raises(AuthFailedError):
        sender.send(DRAFT)


def test_no_recipients_is_send_error():
    sender, connections = _sender(_account())

    with pytest.raises(SendError):
        sender.send(ComposeDraft(account_id=1, subject="nobody"))

    assert connections == []


def test_refused_recipients_is_send_error():
    refused = smtplib.SMTPRecipientsRefused({"bob@example.com": (550, b"no such user")})
    sender, _ = _sender(_account(), send_error=refused)

    with pytest.raises(SendError):
        sender.send(DRAFT)


def test_unreachable_server_is_remote_unavailable():
    sender, _ = _sender(_account(), connect_error=OSError("connection refused"))

    with pytest.raises(RemoteUnavailableError):
        sender.send(DRAFT)


def test_missing_host_is_send_error():
    sender = SmtpSender(Account(email_address="u@example.org", access_token="t"))

    with pytest.raises(SendError):
        sender.send(DRAFT)
