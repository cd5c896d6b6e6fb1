"""
Search functionality for stored messages.

Queries are either a structured filter expression::

    subject:"quarterly report" from:alice is:unread after:2024-01-01

which compiles to conjoined SQL predicates, or plain text, which is
matched as one substring against subject, sender, body and recipients.
Text left over next to structured tokens is ignored.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from mailsync.models import Message
from mailsync.storage import db
from mailsync.utils.errors import InvalidQueryError


# Structured tokens. Quoted values may contain spaces; bare values run to the next space.
_FIELD_TOKEN = re.compile(r'\b(subject|from|to):(?:"([^"]*)"|(\S+))', re.IGNORECASE)
_IS_TOKEN = re.compile(r'\bis:(read|unread|flagged|starred)\b', re.IGNORECASE)
_HAS_TOKEN = re.compile(r'\bhas:attachments?\b', re.IGNORECASE)
_DATE_TOKEN = re.compile(r'\b(after|before):(\S+)', re.IGNORECASE)

_FIELD_COLUMNS = {
    "subject": "m.subject",
    "from": "m.sender",
    "to": "m.recipients",
}

_TEXT_COLUMNS = ("m.subject", "m.sender", "m.body", "m.recipients")


@dataclass
class CompiledQuery:
    """SQL predicates (ANDed together) and their parameters."""
    clauses: List[str] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)
    structured: bool = False

    def add(self, clause: str, *params: Any) -> None:
        self.clauses.append(clause)
        self.params.extend(params)

    @property
    def where(self) -> str:
        return " AND ".join(self.clauses) if self.clauses else "1 = 1"


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _day_start(token: str, value: str) -> str:
    try:
        day = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as e:
        raise InvalidQueryError(f"Invalid date in '{token}:{value}', expected YYYY-MM-DD") from e
    return db.format_timestamp(day.replace(tzinfo=timezone.utc))


def _add_text_match(compiled: CompiledQuery, text: str) -> None:
    pattern = _like_pattern(text)
    ors = " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for column in _TEXT_COLUMNS)
    compiled.add(f"({ors})", *([pattern] * len(_TEXT_COLUMNS)))


def compile_query(query: str) -> Optional[CompiledQuery]:
    """
    Compile a search expression into SQL predicates.

    Args:
        query: The user's search string.

    Returns:
        The compiled predicates, or None for a blank query.

    Raises:
        InvalidQueryError: If an after:/before: value is not a YYYY-MM-DD date.
    """
    if not query or not query.strip():
        return None

    compiled = CompiledQuery()
    remaining = query

    for match in _FIELD_TOKEN.finditer(query):
        name = match.group(1).lower()
        value = match.group(2) if match.group(2) is not None else match.group(3)
        compiled.add(f"{_FIELD_COLUMNS[name]} LIKE ? ESCAPE '\\'", _like_pattern(value))
    remaining = _FIELD_TOKEN.sub(" ", remaining)

    states = {m.group(1).lower() for m in _IS_TOKEN.finditer(remaining)}
    if "read" in states:
        compiled.add("m.is_read = 1")
    elif "unread" in states:
        compiled.add("m.is_read = 0")
    if states & {"flagged", "starred"}:
        compiled.add("m.is_flagged = 1")
    if states:
        remaining = _IS_TOKEN.sub(" ", remaining)

    if _HAS_TOKEN.search(remaining):
        compiled.add("EXISTS (SELECT 1 FROM attachments a WHERE a.message_id = m.id)")
        remaining = _HAS_TOKEN.sub(" ", remaining)

    for match in _DATE_TOKEN.finditer(remaining):
        token, value = match.group(1).lower(), match.group(2)
        bound = _day_start(token, value)
        if token == "after":
            compiled.add("m.date >= ?", bound)
        else:
            compiled.add("m.date < ?", bound)
    remaining = _DATE_TOKEN.sub(" ", remaining)

    compiled.structured = bool(compiled.clauses)
    text = " ".join(remaining.split())
    if not compiled.structured and text:
        _add_text_match(compiled, text)
    return compiled


def search_messages(
    store,
    query: str,
    folder_id: Optional[int] = None,
    limit: int = 50,
    account_id: Optional[int] = None,
) -> List[Message]:
    """
    Search stored messages.

    Args:
        store: The MailStore to query.
        query: Structured filter expression or free text.
        folder_id: Restrict results to one folder.
        limit: Maximum number of results.
        account_id: Restrict results to one account.

    Returns:
        Matching messages, newest first. A blank query returns an empty list.
    """
    compiled = compile_query(query)
    if compiled is None:
        return []

    if folder_id is not None:
        compiled.add("m.folder_id = ?", folder_id)
    if account_id is not None:
        compiled.add("m.account_id = ?", account_id)

    return store.select_messages(
        compiled.where,
        compiled.params,
        order_by="m.date DESC, m.id DESC",
        limit=limit,
    )
