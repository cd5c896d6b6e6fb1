"""
SMTP client for sending mail from IMAP-style accounts.

Supports XOAUTH2 for OAuth accounts and plain LOGIN for password accounts.
``build_mime_message`` is shared with the REST sender.
"""
import base64
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import List, Optional

from mailsync import config
from mailsync.models import Account, AuthType, ComposeDraft
from mailsync.utils.errors import AuthFailedError, RemoteUnavailableError, SendError


logger = logging.getLogger(__name__)


def build_mime_message(account: Account, draft: ComposeDraft) -> MIMEMultipart:
    """
    Build an RFC 822 message from a compose draft.

    Bcc recipients are not written as a header; ``envelope_recipients``
    returns the full delivery list.
    """
    msg = MIMEMultipart('alternative')

    if account.display_name:
        msg['From'] = f"{account.display_name} <{account.email_address}>"
    else:
        msg['From'] = account.email_address
    msg['To'] = ', '.join(draft.to)
    if draft.cc:
        msg['Cc'] = ', '.join(draft.cc)
    msg['Subject'] = draft.subject
    msg['Date'] = formatdate(localtime=True)
    msg['Message-ID'] = make_msgid(domain=account.email_address.partition('@')[2] or None)
    if draft.in_reply_to:
        msg['In-Reply-To'] = draft.in_reply_to
        msg['References'] = draft.in_reply_to

    msg.attach(MIMEText(draft.body_text or '', 'plain', 'utf-8'))
    if draft.body_html:
        msg.attach(MIMEText(draft.body_html, 'html', 'utf-8'))
    return msg


def envelope_recipients(draft: ComposeDraft) -> List[str]:
    return [addr for addr in [*draft.to, *draft.cc, *draft.bcc] if addr]


class SmtpSender:
    """
    Sends compose drafts over SMTP.

    Port 465 uses implicit TLS; any other port connects in plain text and
    upgrades with STARTTLS.
    """

    def __init__(self, account: Account, timeout: Optional[float] = None, smtp_factory=None):
        """
        Args:
            account: The sending account (host, port and credentials).
            timeout: Socket timeout in seconds.
            smtp_factory: Callable ``(host, port, timeout) -> smtplib.SMTP``;
                defaults to ``smtplib.SMTP_SSL`` or ``smtplib.SMTP`` by port.
        """
        self.account = account
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self._smtp_factory = smtp_factory

    def _build_xoauth2_string(self) -> str:
        """Base64-encoded ``user=...\\x01auth=Bearer ...\\x01\\x01``."""
        if not self.account.access_token:
            raise AuthFailedError("No access token available for XOAUTH2")
        auth_string = f"user={self.account.email_address}\x01auth=Bearer {self.account.access_token}\x01\x01"
        return base64.b64encode(auth_string.encode('utf-8')).decode('utf-8')

    def _open(self) -> smtplib.SMTP:
        host = self.account.smtp_host
        port = self.account.smtp_port or config.DEFAULT_SMTP_PORT
        if not host:
            raise SendError(f"No SMTP host configured for {self.account.email_address}")

        logger.info("Connecting to SMTP server %s:%s", host, port)
        try:
            if self._smtp_factory is not None:
                conn = self._smtp_factory(host, port, self.timeout)
            elif port == 465:
                conn = smtplib.SMTP_SSL(host, port, timeout=self.timeout)
            else:
                conn = smtplib.SMTP(host, port, timeout=self.timeout)
            if port != 465:
                conn.ehlo()
                conn.starttls()
                conn.ehlo()
        except (OSError, smtplib.SMTPException) as e:
            raise RemoteUnavailableError(f"Failed to connect to SMTP server {host}:{port}: {e}") from e
        return conn

    def _authenticate(self, conn: smtplib.SMTP) -> None:
        try:
            if self.account.auth_type is AuthType.PASSWORD:
                conn.login(self.account.email_address, self.account.access_token or '')
                return
            code, response = conn.docmd('AUTH', 'XOAUTH2 ' + self._build_xoauth2_string())
        except smtplib.SMTPAuthenticationError as e:
            raise AuthFailedError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPException as e:
            raise SendError(f"SMTP authentication error: {e}") from e

        if code != 235:
            detail = response.decode('utf-8', errors='replace') if isinstance(response, bytes) else str(response)
            raise AuthFailedError(f"XOAUTH2 authentication failed ({code}): {detail}")

    def send(self, draft: ComposeDraft) -> None:
        """
        Send one message.

        Raises:
            SendError: If the server refuses the message.
            AuthFailedError: If the server refuses the credentials.
            RemoteUnavailableError: If the server cannot be reached.
        """
        recipients = envelope_recipients(draft)
        if not recipients:
            raise SendError("Message has no recipients")

        message = build_mime_message(self.account, draft)
        conn = self._open()
        try:
            self._authenticate(conn)
            conn.sendmail(self.account.email_address, recipients, message.as_string())
            logger.info("Sent message to %d recipient(s) from %s", len(recipients), self.account.email_address)
        except smtplib.SMTPRecipientsRefused as e:
            raise SendError(f"All recipients were refused: {list(e.recipients)}") from e
        except (smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as e:
            raise SendError(f"Server rejected the message: {e}") from e
        except smtplib.SMTPServerDisconnected as e:
            raise RemoteUnavailableError(f"SMTP server disconnected: {e}") from e
        finally:
            try:
                conn.quit()
            except (OSError, smtplib.SMTPException):
                pass
