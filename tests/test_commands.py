import pytest

from mailsync.core import commands as commands_module
from mailsync.core.commands import (
    ACCOUNT_DELETED,
    EMAILS_ALL_SYNCED,
    EMAILS_SYNCED,
    FOLDERS_REFRESHED,
    MailCommands,
)
from mailsync.core.sync_manager import SyncReport
from mailsync.models import AuthType, ComposeDraft, Folder, Provider
from mailsync.utils.errors import (
    AuthFailedError,
    InvalidQueryError,
    NotFoundError,
    RemoteUnavailableError,
    SendError,
)


class StubOrchestrator:
    def __init__(self):
        self.refresher = object()
        self.calls = []

    def sync_folder(self, account_id, folder_id, cancel_event=None):
        self.calls.append(("sync_folder", account_id, folder_id, cancel_event))
        return SyncReport(account_id=account_id, folders_synced=1, messages_added=3)

    def sync_all_folders(self, account_id, cancel_event=None):
        self.calls.append(("sync_all_folders", account_id, cancel_event))
        return SyncReport(account_id=account_id, folders_synced=2, messages_added=5, errors=[("SENT", "down")])

    def refresh_folders(self, account_id):
        self.calls.append(("refresh_folders", account_id))
        return [Folder(id=1), Folder(id=2)]


@pytest.fixture
def orchestrator():
    return StubOrchestrator()


@pytest.fixture
def events():
    return []


@pytest.fixture
def commands(store, orchestrator, events):
    cmds = MailCommands(store, orchestrator)
    cmds.subscribe(events.append)
    return cmds


def test_sync_commands_publish_events(commands, orchestrator, events):
    assert commands.sync_folder(1, 7) is None
    commands.sync_all_folders(1)
    commands.refresh_folders(1)

    assert [e.type for e in events] == [EMAILS_SYNCED, EMAILS_ALL_SYNCED, FOLDERS_REFRESHED]
    assert events[0].payload == {"account_id": 1, "folder_id": 7, "messages_added": 3}
    assert events[1].payload == {
        "account_id": 1,
        "folders_synced": 2,
        "messages_added": 5,
        "errors": [("SENT", "down")],
    }
    assert events[2].payload == {"account_id": 1, "folder_count": 2}
    assert orchestrator.calls[0] == ("sync_folder", 1, 7, None)


def test_failed_sync_publishes_nothing(commands, orchestrator, events):
    def boom(account_id, cancel_event=None):
        raise AuthFailedError("revoked")

    orchestrator.sync_all_folders = boom

    with pytest.raises(AuthFailedError):
        commands.sync_all_folders(1)
    assert events == []


def test_delete_account_publishes_only_when_deleted(commands, events, make_account):
    account = make_account()

    assert commands.delete_account(account.id) is True
    assert commands.delete_account(account.id) is False
    assert [(e.type, e.payload) for e in events] == [(ACCOUNT_DELETED, {"account_id": account.id})]
    assert commands.list_accounts() == []


def test_unsubscribe_and_failing_listener(commands, events):
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    commands.subscribe(broken)
    unsubscribe = commands.subscribe(received.append)

    commands.refresh_folders(1)
    unsubscribe()
    commands.refresh_folders(1)

    assert len(received) == 1
    assert len(events) == 2


def test_read_commands(commands, make_account, make_folder, make_message):
    account = make_account()
    inbox = make_folder(account)
    first = make_message(account, inbox, "1", minutes=1, thread_id="t")
    make_message(account, inbox, "2", minutes=2, thread_id="t", subject="Quarterly report")

    page = commands.list_messages(inbox.id, limit=1)
    assert [m.uid for m in page["items"]] == ["2"]
    assert page["total"] == 2

    assert [f.id for f in commands.list_folders(account.id)] == [inbox.id]
    assert commands.get_message(first.id).uid == "1"
    assert commands.get_message_by_uid(account.id, "2").subject == "Quarterly report"
    assert [m.uid for m in commands.list_thread("t")] == ["1", "2"]
    assert [m.uid for m in commands.search_messages("subject:quarterly")] == ["2"]

    updated = commands.mark_read(first.id)
    assert updated.is_read is True
    assert commands.list_folders(account.id)[0].unread_count == 1


def test_bad_search_date_is_a_typed_error(commands, make_account):
    make_account()

    with pytest.raises(InvalidQueryError):
        commands.search_messages("before:31-12-2024")


def test_list_messages_unknown_folder(commands):
    with pytest.raises(NotFoundError):
        commands.list_messages(404)


def test_send_message_uses_injected_sender(store, orchestrator, make_account):
    account = make_account()
    sent = []
    commands = MailCommands(store, orchestrator, sender=lambda acct, draft: sent.append((acct.id, draft.subject)))

    assert commands.send_message(ComposeDraft(account_id=account.id, to=["b@x.com"], subject="Hi")) is True
    assert sent == [(account.id, "Hi")]


@pytest.mark.parametrize(
    "error",
    [SendError("rejected"), RemoteUnavailableError("down"), AuthFailedError("revoked")],
)
def test_send_message_failure_returns_false(store, orchestrator, make_account, error):
    account = make_account()

    def failing(acct, draft):
        raise error

    commands = MailCommands(store, orchestrator, sender=failing)

    assert commands.send_message(ComposeDraft(account_id=account.id, to=["b@x.com"])) is False


def test_send_message_unknown_account(commands):
    with pytest.raises(NotFoundError):
        commands.send_message(ComposeDraft(account_id=999, to=["b@x.com"]))


def test_default_sender_routes_by_provider(monkeypatch, commands, orchestrator, make_account):
    routed = []

    class FakeRest:
        def __init__(self, account, refresher):
            routed.append(("rest", account.email_address, refresher))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def send_message(self, draft):
            return "id-1"

    class FakeSmtp:
        def __init__(self, account):
            routed.append(("smtp", account.email_address, None))

        def send(self, draft):
            pass

    monkeypatch.setattr(commands_module, "GmailRestFetcher", FakeRest)
    monkeypatch.setattr(commands_module, "SmtpSender", FakeSmtp)

    rest = make_account(email="rest@x.com")
    imap = make_account(
        email="imap@x.com",
        provider=Provider.IMAP,
        auth_type=AuthType.PASSWORD,
        access_token="pw",
        refresh_token=None,
        smtp_host="smtp.x.com",
    )

    assert commands.send_message(ComposeDraft(account_id=rest.id, to=["b@x.com"])) is True
    assert commands.send_message(ComposeDraft(account_id=imap.id, to=["b@x.com"])) is True
    assert routed == [("rest", "rest@x.com", orchestrator.refresher), ("smtp", "imap@x.com", None)]
