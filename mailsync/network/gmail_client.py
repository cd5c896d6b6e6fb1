"""
Gmail REST API fetcher.

Folders are Gmail labels; messages are retrieved with ``format=full`` and
normalized from the JSON payload. Outgoing mail is submitted through
``messages/send``.
"""
import base64
import binascii
import logging
import time
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from mailsync import config
from mailsync.models import Account, AttachmentDraft, ComposeDraft, FolderKind, MessageDraft
from mailsync.network.base import Fetcher, RemoteFolder, decode_header_value, parse_date
from mailsync.network.smtp_client import build_mime_message
from mailsync.utils.errors import AuthFailedError, ParseFailureError, RemoteUnavailableError


logger = logging.getLogger(__name__)

# Well-known label ids; every other label is a custom folder.
LABEL_KINDS: Dict[str, FolderKind] = {
    "INBOX": FolderKind.INBOX,
    "SENT": FolderKind.SENT,
    "DRAFT": FolderKind.DRAFTS,
    "TRASH": FolderKind.TRASH,
    "SPAM": FolderKind.SPAM,
}

# System labels that mirror message state rather than location
STATE_LABELS = {"UNREAD", "STARRED", "IMPORTANT", "CHAT"}

DEFAULT_FOLDERS: List[RemoteFolder] = [
    RemoteFolder("INBOX", "Inbox", FolderKind.INBOX),
    RemoteFolder("SENT", "Sent", FolderKind.SENT),
    RemoteFolder("DRAFT", "Drafts", FolderKind.DRAFTS),
    RemoteFolder("TRASH", "Trash", FolderKind.TRASH),
]

_PAGE_SIZE_LIMIT = 500


def label_display_name(label_name: str) -> str:
    """
    Human name for a system label.

    >>> label_display_name("CATEGORY_PERSONAL")
    'Personal'
    """
    name = label_name
    if name.startswith("CATEGORY_"):
        name = name[len("CATEGORY_"):]
    return " ".join(word.capitalize() for word in name.split("_") if word)


def _b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise ParseFailureError(f"Invalid base64url body: {e}") from e


class GmailRestFetcher(Fetcher):
    """
    Fetcher for accounts using the Gmail REST API.

    Every call goes through ``_request``, which refreshes the access token at
    most once per call when the API answers 401.
    """

    def __init__(
        self,
        account: Account,
        refresher=None,
        session: Optional[requests.Session] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limit_retries: int = 3,
        transport_retries: int = 1,
    ):
        super().__init__(account, refresher)
        self.session = session or requests.Session()
        self._owns_session = session is None
        self.api_base = (api_base or config.GMAIL_API_BASE).rstrip("/")
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self.rate_limit_retries = rate_limit_retries
        self.transport_retries = transport_retries
        self.max_retry_after_sec = config.MAX_RETRY_AFTER_SECONDS

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.account.access_token or ''}"}

    @staticmethod
    def _retry_after_to_seconds(raw_value) -> float:
        text = str(raw_value or "").strip()
        if not text:
            return 1
        try:
            return max(0, int(text))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return 1
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return max(0, int(parsed.timestamp() - time.time()))

    def _sleep_for_retry_after(self, response) -> None:
        headers = getattr(response, "headers", {}) or {}
        retry_after = headers.get("Retry-After") if hasattr(headers, "get") else None
        delay = min(self.max_retry_after_sec, self._retry_after_to_seconds(retry_after))
        logger.info("Rate limited by Gmail API, waiting %ss", delay)
        time.sleep(delay)

    def _refresh_access_token(self) -> None:
        if self.refresher is None:
            raise AuthFailedError(
                f"Access token for {self.account.email_address} was rejected and no refresher is configured"
            )
        self.account = self.refresher.refresh(self.account)

    def _request(self, method: str, path: str, params=None, json=None) -> requests.Response:
        """
        Issue one API call.

        A 401 triggers one token refresh and one retry of the same call; a
        second 401 is surfaced as AuthFailedError. 429 responses are retried
        after the server's Retry-After delay.

        Raises:
            AuthFailedError: Credentials rejected after refresh, or refresh failed.
            RemoteUnavailableError: Network failure, timeout or error status.
        """
        url = f"{self.api_base}{path}"
        auth_retried = False
        transport_retries = self.transport_retries if method.upper() == "GET" else 0
        rate_limit_attempt = 0
        attempt = 0

        while True:
            try:
                resp = self.session.request(
                    method,
                    url,
                    headers=self._headers(),
                    params=params,
                    json=json,
                    timeout=self.timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt >= transport_retries:
                    raise RemoteUnavailableError(f"{method} {path} failed: {e}") from e
                attempt += 1
                continue
            except requests.RequestException as e:
                raise RemoteUnavailableError(f"{method} {path} failed: {e}") from e

            if resp.status_code == 401:
                if auth_retried:
                    raise AuthFailedError(
                        f"Gmail API rejected the refreshed token for {self.account.email_address}"
                    )
                auth_retried = True
                logger.info("Access token expired for %s, refreshing", self.account.email_address)
                self._refresh_access_token()
                continue

            if resp.status_code == 429 and rate_limit_attempt < max(0, self.rate_limit_retries):
                rate_limit_attempt += 1
                self._sleep_for_retry_after(resp)
                continue

            if resp.status_code >= 400:
                raise RemoteUnavailableError(
                    f"{method} {path} returned HTTP {resp.status_code}: {resp.text[:200]}"
                )
            return resp

    def _get_json(self, path: str, params=None) -> Dict[str, Any]:
        resp = self._request("GET", path, params=params)
        try:
            payload = resp.json()
        except ValueError as e:
            raise ParseFailureError(f"Invalid JSON response from {path}") from e
        if not isinstance(payload, dict):
            raise ParseFailureError(f"Unexpected JSON shape from {path}")
        return payload

    # ------------------------------------------------------------------
    # Fetcher interface
    # ------------------------------------------------------------------

    def discover_folders(self) -> List[RemoteFolder]:
        payload = self._get_json("/labels")
        folders = []
        for label in payload.get("labels", []):
            label_id = label.get("id")
            if not label_id or label_id in STATE_LABELS:
                continue
            raw_name = label.get("name") or label_id
            if label.get("type") == "system":
                name = label_display_name(raw_name)
            else:
                name = raw_name
            folders.append(RemoteFolder(label_id, name, LABEL_KINDS.get(label_id, FolderKind.CUSTOM)))
        logger.info("Discovered %d labels for %s", len(folders), self.account.email_address)
        return folders

    def list_message_ids(self, path: str, max_results: int) -> List[str]:
        ids: List[str] = []
        page_token = None
        while len(ids) < max_results:
            params = {
                "labelIds": path,
                "maxResults": min(max_results - len(ids), _PAGE_SIZE_LIMIT),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._get_json("/messages", params=params)
            ids.extend(item["id"] for item in payload.get("messages", []) if item.get("id"))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return ids[:max_results]

    def fetch_message(self, message_id: str, path: str) -> MessageDraft:
        data = self._get_json(f"/messages/{message_id}", params={"format": "full"})
        return self.parse_message(data)

    def parse_message(self, data: Dict[str, Any]) -> MessageDraft:
        """
        Normalize a ``format=full`` message resource.

        Raises:
            ParseFailureError: If required fields are missing or malformed.
        """
        gmail_id = data.get("id")
        payload = data.get("payload")
        if not gmail_id or not isinstance(payload, dict):
            raise ParseFailureError(f"Message {gmail_id or '?'} has no payload")

        headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in payload.get("headers", [])
            if isinstance(h, dict)
        }
        body_text, body_html, attachments = self._walk_parts(payload)

        labels = set(data.get("labelIds") or [])
        return MessageDraft(
            account_id=self.account.id or 0,
            uid=gmail_id,
            thread_id=data.get("threadId") or f"thread-{uuid.uuid4().hex}",
            subject=decode_header_value(headers.get("subject")),
            sender=decode_header_value(headers.get("from")),
            recipients=decode_header_value(headers.get("to")),
            cc=decode_header_value(headers.get("cc")),
            bcc=decode_header_value(headers.get("bcc")),
            body_text=body_text,
            body_html=body_html,
            date=self._message_date(headers.get("date"), data.get("internalDate")),
            is_read="UNREAD" not in labels,
            is_flagged="STARRED" in labels,
            size_bytes=int(data.get("sizeEstimate") or 0),
            attachments=attachments,
        )

    @staticmethod
    def _message_date(header_value: Optional[str], internal_date) -> datetime:
        parsed = parse_date(header_value)
        if parsed is not None:
            return parsed
        if internal_date:
            try:
                return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                pass
        return datetime.now(timezone.utc)

    def _walk_parts(self, root: Dict[str, Any]) -> Tuple[str, str, List[AttachmentDraft]]:
        """Collect the first text/plain body, the first text/html body and attachment metadata."""
        body_text = ""
        body_html = ""
        attachments: List[AttachmentDraft] = []
        stack = [root]
        while stack:
            part = stack.pop(0)
            mime_type = (part.get("mimeType") or "").lower()
            body = part.get("body") or {}
            filename = part.get("filename") or ""

            if filename:
                part_headers = {
                    h.get("name", "").lower(): h.get("value", "")
                    for h in part.get("headers", [])
                    if isinstance(h, dict)
                }
                content_id = part_headers.get("content-id", "").strip("<> ") or None
                attachments.append(
                    AttachmentDraft(
                        filename=filename,
                        content_type=mime_type or "application/octet-stream",
                        size=int(body.get("size") or 0),
                        content_id=content_id,
                    )
                )
            elif body.get("data"):
                if mime_type == "text/plain" and not body_text:
                    body_text = _b64url_decode(body["data"]).decode("utf-8", errors="replace")
                elif mime_type == "text/html" and not body_html:
                    body_html = _b64url_decode(body["data"]).decode("utf-8", errors="replace")

            stack.extend(part.get("parts") or [])
        return body_text, body_html, attachments

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_message(self, draft: ComposeDraft) -> str:
        """
        Submit a message through the API.

        Returns:
            The Gmail id of the sent message.
        """
        mime = build_mime_message(self.account, draft)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")
        resp = self._request("POST", "/messages/send", json={"raw": raw})
        try:
            message_id = resp.json().get("id", "")
        except (ValueError, AttributeError):
            message_id = ""
        logger.info("Sent message %s from %s", message_id, self.account.email_address)
        return message_id

    def close(self) -> None:
        if self._owns_session:
            self.session.close()
