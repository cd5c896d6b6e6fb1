"""
Durable mail store.

This module is the only place that writes to the backing SQLite database.
It converts between rows and domain models, keeps credentials encrypted at
rest, and wraps every multi-statement mutation in a single transaction.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from mailsync import config
from mailsync.models import (
    Account,
    AccountDraft,
    Attachment,
    AuthType,
    Folder,
    FolderDraft,
    FolderKind,
    Message,
    MessageDraft,
    MessagePage,
    Provider,
)
from mailsync.storage import db
from mailsync.storage.encryption import TokenCipher
from mailsync.utils.errors import ConflictError, NotFoundError, StoreError


logger = logging.getLogger(__name__)

_MESSAGE_SELECT = """
    SELECT m.*,
           EXISTS(SELECT 1 FROM attachments a WHERE a.message_id = m.id) AS has_attachments
    FROM messages m
"""

_COUNTS_UPDATE = """
    UPDATE folders
    SET total_count = (SELECT COUNT(*) FROM messages m WHERE m.folder_id = folders.id),
        unread_count = (SELECT COUNT(*) FROM messages m
                        WHERE m.folder_id = folders.id AND m.is_read = 0)
"""


def _translate(exc: sqlite3.Error) -> Exception:
    """Map a sqlite error onto the store's error taxonomy."""
    text = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE constraint failed" in text:
            return ConflictError(text)
        if "FOREIGN KEY constraint failed" in text:
            return NotFoundError(f"Referenced row does not exist ({text})")
    return StoreError(f"Database error: {text}")


class MailStore:
    """
    Accounts, folders, messages and attachments over one SQLite connection.

    A store instance is meant to be created once and injected into the
    components that need it. It is safe to share between threads; all access
    to the connection is serialized through a re-entrant lock.
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        cipher: Optional[TokenCipher] = None,
    ):
        """
        Args:
            db_path: Database file, or ``":memory:"``. Defaults to
                ``config.SQLITE_DB_PATH``.
            cipher: Credential cipher. Defaults to a key file next to the
                database (or an ephemeral key for in-memory stores).
        """
        self.db_path = str(db_path or config.SQLITE_DB_PATH)
        if cipher is None:
            if self.db_path == db.MEMORY_DB:
                cipher = TokenCipher()
            else:
                cipher = TokenCipher(key_path=Path(self.db_path).parent / "secret.key")
        self._cipher = cipher
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = db.connect(self.db_path)
        db.init_db(self._conn)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        Nested calls join the outermost transaction. Any exception rolls the
        whole transaction back; sqlite errors are re-raised as store errors.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise _translate(e) from e
            self._depth = 1
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise _translate(e) from e
            except BaseException:
                self._rollback()
                raise
            finally:
                self._depth = 0

    def _rollback(self) -> None:
        # some errors (disk full, I/O) already ended the transaction
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchone()
            except sqlite3.Error as e:
                raise _translate(e) from e

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise _translate(e) from e

    # ========================================================================
    # Accounts
    # ========================================================================

    def add_account(self, draft: AccountDraft) -> Account:
        """
        Insert a new account.

        Empty protocol endpoints are filled from the service defaults.

        Raises:
            ConflictError: If an account with the same email address exists.
        """
        defaults = config.provider_defaults(draft.service)
        now = db.format_timestamp(db.utcnow())
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO accounts (
                        display_name, email_address, provider, service, auth_type,
                        access_token, refresh_token, imap_host, imap_port,
                        smtp_host, smtp_port, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        draft.display_name,
                        draft.email_address.strip(),
                        Provider(draft.provider).value,
                        draft.service,
                        AuthType(draft.auth_type).value,
                        self._cipher.encrypt_text(draft.access_token),
                        self._cipher.encrypt_text(draft.refresh_token),
                        draft.imap_host or defaults.get("imap_host", ""),
                        draft.imap_port or defaults.get("imap_port", config.DEFAULT_IMAP_PORT),
                        draft.smtp_host or defaults.get("smtp_host", ""),
                        draft.smtp_port or defaults.get("smtp_port", config.DEFAULT_SMTP_PORT),
                        now,
                        now,
                    ),
                )
                account_id = cursor.lastrowid
        except ConflictError as e:
            raise ConflictError(f"Account {draft.email_address} already exists") from e

        logger.info("Added account %s (id=%s)", draft.email_address, account_id)
        return self.get_account(account_id)

    def get_account(self, account_id: int) -> Optional[Account]:
        row = self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return self._row_to_account(row) if row else None

    def require_account(self, account_id: int) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_accounts(self) -> List[Account]:
        rows = self._fetchall("SELECT * FROM accounts ORDER BY created_at DESC, id DESC")
        return [self._row_to_account(row) for row in rows]

    def update_account(self, account: Account) -> Account:
        """
        Persist every mutable field of ``account`` and bump ``updated_at``.

        Raises:
            NotFoundError: If the account row does not exist.
            ConflictError: If the new email address belongs to another account.
        """
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE accounts
                    SET display_name = ?, email_address = ?, provider = ?, service = ?,
                        auth_type = ?, access_token = ?, refresh_token = ?,
                        imap_host = ?, imap_port = ?, smtp_host = ?, smtp_port = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        account.display_name,
                        account.email_address.strip(),
                        Provider(account.provider).value,
                        account.service,
                        AuthType(account.auth_type).value,
                        self._cipher.encrypt_text(account.access_token),
                        self._cipher.encrypt_text(account.refresh_token),
                        account.imap_host,
                        account.imap_port,
                        account.smtp_host,
                        account.smtp_port,
                        db.format_timestamp(db.utcnow()),
                        account.id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Account {account.id} not found")
        except ConflictError as e:
            raise ConflictError(f"Account {account.email_address} already exists") from e
        return self.get_account(account.id)

    def delete_account(self, account_id: int) -> bool:
        """
        Delete an account with its attachments, messages and folders.

        All four deletes run in one transaction; a failure in any of them
        leaves the account fully intact.

        Returns:
            True if the account row existed.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                DELETE FROM attachments
                WHERE message_id IN (SELECT id FROM messages WHERE account_id = ?)
                """,
                (account_id,),
            )
            conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM folders WHERE account_id = ?", (account_id,))
            cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            existed = cursor.rowcount > 0

        if existed:
            logger.info("Deleted account %s and all of its data", account_id)
        return existed

    # ========================================================================
    # Folders
    # ========================================================================

    def upsert_folder(self, draft: FolderDraft) -> Folder:
        """
        Insert a folder unless (account_id, path) already exists.

        Returns:
            The stored folder, new or pre-existing.

        Raises:
            NotFoundError: If the owning account does not exist.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO folders (account_id, name, path, kind)
                VALUES (?, ?, ?, ?)
                """,
                (draft.account_id, draft.name or draft.path, draft.path, FolderKind(draft.kind).value),
            )
            row = conn.execute(
                "SELECT * FROM folders WHERE account_id = ? AND path = ?",
                (draft.account_id, draft.path),
            ).fetchone()
        return self._row_to_folder(row)

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        row = self._fetchone("SELECT * FROM folders WHERE id = ?", (folder_id,))
        return self._row_to_folder(row) if row else None

    def get_folder_by_path(self, account_id: int, path: str) -> Optional[Folder]:
        row = self._fetchone(
            "SELECT * FROM folders WHERE account_id = ? AND path = ?", (account_id, path)
        )
        return self._row_to_folder(row) if row else None

    def list_folders(self, account_id: int) -> List[Folder]:
        rows = self._fetchall(
            "SELECT * FROM folders WHERE account_id = ? ORDER BY id", (account_id,)
        )
        return [self._row_to_folder(row) for row in rows]

    def recompute_folder_counts(self, folder_id: int) -> Folder:
        """
        Set a folder's counts from its actual message rows.

        Raises:
            NotFoundError: If the folder does not exist.
        """
        with self.transaction() as conn:
            cursor = conn.execute(_COUNTS_UPDATE + " WHERE id = ?", (folder_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Folder {folder_id} not found")
        return self.get_folder(folder_id)

    def recompute_all_folder_counts(self, account_id: int) -> List[Folder]:
        with self.transaction() as conn:
            conn.execute(_COUNTS_UPDATE + " WHERE account_id = ?", (account_id,))
        return self.list_folders(account_id)

    # ========================================================================
    # Messages
    # ========================================================================

    def add_message(self, draft: MessageDraft) -> Message:
        """
        Insert a message unless (account_id, uid) is already stored.

        Returns:
            The existing row unchanged, or the newly inserted row.

        Raises:
            NotFoundError: If the folder does not exist or belongs to
                another account.
        """
        message, _ = self.insert_message(draft)
        return message

    def insert_message(self, draft: MessageDraft) -> Tuple[Message, bool]:
        """
        Like ``add_message`` but also reports whether a row was written.

        The existence check and the insert share one transaction, so two
        concurrent writers can never both insert the same uid.
        """
        with self.transaction() as conn:
            existing = conn.execute(
                _MESSAGE_SELECT + " WHERE m.account_id = ? AND m.uid = ?",
                (draft.account_id, draft.uid),
            ).fetchone()
            if existing:
                return self._row_to_message(existing), False

            folder = conn.execute(
                "SELECT account_id FROM folders WHERE id = ?", (draft.folder_id,)
            ).fetchone()
            if folder is None or folder["account_id"] != draft.account_id:
                raise NotFoundError(
                    f"Folder {draft.folder_id} not found for account {draft.account_id}"
                )

            cursor = conn.execute(
                """
                INSERT INTO messages (
                    account_id, folder_id, uid, thread_id, subject, sender, recipients,
                    cc, bcc, body, html_body, date, is_read, is_flagged, is_answered,
                    is_forwarded, size, local_changes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.account_id,
                    draft.folder_id,
                    draft.uid,
                    draft.thread_id,
                    draft.subject or "",
                    draft.sender or "",
                    draft.recipients or "",
                    draft.cc or "",
                    draft.bcc or "",
                    draft.body_text or "",
                    draft.body_html or "",
                    db.format_timestamp(draft.date),
                    int(draft.is_read),
                    int(draft.is_flagged),
                    int(draft.is_answered),
                    int(draft.is_forwarded),
                    draft.size_bytes or 0,
                    int(draft.local_changes),
                    db.format_timestamp(db.utcnow()),
                ),
            )
            message_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO attachments (message_id, filename, content_type, size, content_id, file_path)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        message_id,
                        att.filename,
                        att.content_type,
                        att.size,
                        att.content_id,
                        att.file_path,
                    )
                    for att in draft.attachments
                ],
            )
            return self.get_message(message_id), True

    def get_message(self, message_id: int) -> Optional[Message]:
        row = self._fetchone(_MESSAGE_SELECT + " WHERE m.id = ?", (message_id,))
        return self._row_to_message(row) if row else None

    def get_message_by_uid(self, account_id: int, uid: str) -> Optional[Message]:
        row = self._fetchone(
            _MESSAGE_SELECT + " WHERE m.account_id = ? AND m.uid = ?", (account_id, uid)
        )
        return self._row_to_message(row) if row else None

    def list_messages(self, folder_id: int, limit: int = 50, offset: int = 0) -> MessagePage:
        """
        Page through a folder, newest first.

        ``total`` is the number of rows in the folder, independent of the
        page, so callers can detect the end of data.

        Raises:
            NotFoundError: If the folder does not exist.
        """
        if self.get_folder(folder_id) is None:
            raise NotFoundError(f"Folder {folder_id} not found")
        with self._lock:
            items = self.select_messages(
                "m.folder_id = ?", (folder_id,), order_by="m.date DESC, m.id DESC",
                limit=limit, offset=offset,
            )
            total = self._fetchone(
                "SELECT COUNT(*) AS total FROM messages WHERE folder_id = ?", (folder_id,)
            )["total"]
        return MessagePage(items=items, total=total)

    def get_messages_by_thread(self, thread_id: str, account_id: Optional[int] = None) -> List[Message]:
        """Messages of one conversation, oldest first."""
        where, params = "m.thread_id = ?", [thread_id]
        if account_id is not None:
            where += " AND m.account_id = ?"
            params.append(account_id)
        return self.select_messages(where, params, order_by="m.date ASC, m.id ASC")

    def select_messages(
        self,
        where: str,
        params: Sequence[Any] = (),
        order_by: str = "m.date DESC, m.id DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Message]:
        """Run a filtered message query; ``where`` may reference alias ``m``."""
        query = _MESSAGE_SELECT + f" WHERE {where} ORDER BY {order_by}"
        params = list(params)
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [self._row_to_message(row) for row in self._fetchall(query, params)]

    def search(
        self,
        query: str,
        folder_id: Optional[int] = None,
        limit: int = 50,
        account_id: Optional[int] = None,
    ) -> List[Message]:
        """Search messages with the filter language in ``mailsync.core.search``."""
        from mailsync.core.search import search_messages

        return search_messages(self, query, folder_id=folder_id, limit=limit, account_id=account_id)

    def update_message_flags(
        self,
        message_id: int,
        is_read: Optional[bool] = None,
        is_flagged: Optional[bool] = None,
        is_answered: Optional[bool] = None,
        is_forwarded: Optional[bool] = None,
    ) -> Message:
        """
        Change local state flags and recompute the owning folder's counts.

        Raises:
            NotFoundError: If the message does not exist.
        """
        changes = {
            "is_read": is_read,
            "is_flagged": is_flagged,
            "is_answered": is_answered,
            "is_forwarded": is_forwarded,
        }
        changes = {column: int(value) for column, value in changes.items() if value is not None}
        if "is_read" in changes or "is_flagged" in changes:
            changes["local_changes"] = 1

        with self.transaction() as conn:
            row = conn.execute(
                "SELECT folder_id FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Message {message_id} not found")
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                conn.execute(
                    f"UPDATE messages SET {assignments} WHERE id = ?",
                    [*changes.values(), message_id],
                )
                conn.execute(_COUNTS_UPDATE + " WHERE id = ?", (row["folder_id"],))
        return self.get_message(message_id)

    def message_states(self, account_id: int) -> Dict[str, Dict[str, bool]]:
        """Read/flag state the user changed locally, keyed by uid."""
        rows = self._fetchall(
            "SELECT uid, is_read, is_flagged FROM messages WHERE account_id = ? AND local_changes = 1",
            (account_id,),
        )
        return {
            row["uid"]: {"is_read": bool(row["is_read"]), "is_flagged": bool(row["is_flagged"])}
            for row in rows
        }

    def clear_messages_for_account(self, account_id: int) -> int:
        """
        Remove every message (and attachment) of an account, keeping folders.

        Returns:
            Number of messages removed.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                DELETE FROM attachments
                WHERE message_id IN (SELECT id FROM messages WHERE account_id = ?)
                """,
                (account_id,),
            )
            cursor = conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
            removed = cursor.rowcount
            conn.execute(_COUNTS_UPDATE + " WHERE account_id = ?", (account_id,))
        logger.info("Cleared %d messages for account %s", removed, account_id)
        return removed

    # ========================================================================
    # Attachments
    # ========================================================================

    def list_attachments(self, message_id: int) -> List[Attachment]:
        rows = self._fetchall(
            "SELECT * FROM attachments WHERE message_id = ? ORDER BY id", (message_id,)
        )
        return [
            Attachment(
                id=row["id"],
                message_id=row["message_id"],
                filename=row["filename"],
                content_type=row["content_type"],
                size=row["size"],
                content_id=row["content_id"],
                file_path=row["file_path"],
            )
            for row in rows
        ]

    def count_attachments(self, account_id: int) -> int:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS total FROM attachments a
            JOIN messages m ON m.id = a.message_id
            WHERE m.account_id = ?
            """,
            (account_id,),
        )
        return row["total"]

    # ========================================================================
    # Row converters
    # ========================================================================

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            display_name=row["display_name"],
            email_address=row["email_address"],
            provider=Provider(row["provider"]),
            service=row["service"],
            auth_type=AuthType(row["auth_type"]),
            access_token=self._cipher.decrypt_text(row["access_token"]),
            refresh_token=self._cipher.decrypt_text(row["refresh_token"]),
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            smtp_host=row["smtp_host"],
            smtp_port=row["smtp_port"],
            created_at=db.parse_timestamp(row["created_at"]),
            updated_at=db.parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_folder(row: sqlite3.Row) -> Folder:
        return Folder(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            path=row["path"],
            kind=FolderKind(row["kind"]),
            unread_count=row["unread_count"],
            total_count=row["total_count"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            folder_id=row["folder_id"],
            uid=row["uid"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender=row["sender"],
            recipients=row["recipients"],
            cc=row["cc"],
            bcc=row["bcc"],
            body_text=row["body"],
            body_html=row["html_body"],
            date=db.parse_timestamp(row["date"]),
            is_read=bool(row["is_read"]),
            is_flagged=bool(row["is_flagged"]),
            is_answered=bool(row["is_answered"]),
            is_forwarded=bool(row["is_forwarded"]),
            size_bytes=row["size"],
            created_at=db.parse_timestamp(row["created_at"]),
            has_attachments=bool(row["has_attachments"]),
        )
