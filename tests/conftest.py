from datetime import datetime, timedelta, timezone

import pytest

from mailsync.models import (
    AccountDraft,
    AttachmentDraft,
    FolderDraft,
    FolderKind,
    MessageDraft,
    Provider,
)
from mailsync.storage.encryption import TokenCipher
from mailsync.storage.mail_store import MailStore


BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    mail_store = MailStore(tmp_path / "mail.db", cipher=TokenCipher())
    yield mail_store
    mail_store.close()


@pytest.fixture
def make_account(store):
    def _make(email="u@x.com", provider=Provider.REST_API, **kwargs):
        kwargs.setdefault("access_token", "access-1")
        kwargs.setdefault("refresh_token", "refresh-1")
        return store.add_account(
            AccountDraft(display_name="User", email_address=email, provider=provider, **kwargs)
        )

    return _make


@pytest.fixture
def make_folder(store):
    def _make(account, path="INBOX", kind=FolderKind.INBOX, name=None):
        return store.upsert_folder(
            FolderDraft(account_id=account.id, name=name or path.title(), path=path, kind=kind)
        )

    return _make


@pytest.fixture
def make_message(store):
    def _make(account, folder, uid, minutes=0, attachments=(), **kwargs):
        kwargs.setdefault("subject", f"Subject {uid}")
        kwargs.setdefault("sender", "alice@example.com")
        kwargs.setdefault("thread_id", f"thread-{uid}")
        draft = MessageDraft(
            account_id=account.id,
            folder_id=folder.id,
            uid=uid,
            date=BASE_DATE + timedelta(minutes=minutes),
            attachments=[AttachmentDraft(filename=name) for name in attachments],
            **kwargs,
        )
        return store.add_message(draft)

    return _make
