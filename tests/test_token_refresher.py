import pytest
import requests

from mailsync.auth.oauth import GoogleOAuthProvider, OutlookOAuthProvider, TokenBundle
from mailsync.auth.token_refresher import TokenRefresher
from mailsync.models import AuthType, Provider
from mailsync.utils.errors import AuthFailedError, TokenRefreshError


class DummyProvider:
    def __init__(self, bundle=None, error=None):
        self.bundle = bundle
        self.error = error
        self.calls = []

    def refresh_tokens(self, refresh_token):
        self.calls.append(refresh_token)
        if self.error:
            raise self.error
        return self.bundle


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, data=None, timeout=None):
        self.posts.append((url, data))
        if self.error:
            raise self.error
        return self.response


def test_refresh_persists_new_access_token(store, make_account):
    account = make_account(refresh_token="refresh-1")
    provider = DummyProvider(TokenBundle("access-2", None))
    refresher = TokenRefresher(store, providers={"gmail": provider})

    updated = refresher.refresh(account)

    assert updated.access_token == "access-2"
    assert updated.refresh_token == "refresh-1"
    assert store.get_account(account.id).access_token == "access-2"
    assert provider.calls == ["refresh-1"]


def test_refresh_keeps_rotated_refresh_token(store, make_account):
    account = make_account()
    refresher = TokenRefresher(store, providers={"gmail": DummyProvider(TokenBundle("a2", "r2"))})

    refresher.refresh(account)

    assert store.get_account(account.id).refresh_token == "r2"


def test_rejected_refresh_propagates_and_leaves_store_untouched(store, make_account):
    account = make_account(access_token="access-1")
    provider = DummyProvider(error=TokenRefreshError("invalid_grant"))
    refresher = TokenRefresher(store, providers={"gmail": provider})

    with pytest.raises(AuthFailedError):
        refresher.refresh(account)

    assert store.get_account(account.id).access_token == "access-1"
    assert len(provider.calls) == 1


def test_missing_refresh_token_fails(store, make_account):
    account = make_account(refresh_token=None)
    refresher = TokenRefresher(store, providers={"gmail": DummyProvider(TokenBundle("x", None))})

    with pytest.raises(AuthFailedError):
        refresher.refresh(account)


def test_password_account_cannot_refresh(store, make_account):
    account = make_account(provider=Provider.IMAP, auth_type=AuthType.PASSWORD, refresh_token=None)

    with pytest.raises(AuthFailedError):
        TokenRefresher(store, providers={}).refresh(account)


def test_unknown_service_fails(store, make_account):
    account = make_account(service="yahoo")

    with pytest.raises(AuthFailedError):
        TokenRefresher(store, providers={"gmail": DummyProvider()}).refresh(account)


def test_google_refresh_posts_refresh_grant():
    session = _Session(_FakeResponse(200, {"access_token": "new", "expires_in": 3600}))
    provider = GoogleOAuthProvider("client", "secret", session=session)

    bundle = provider.refresh_tokens("refresh-1")

    url, data = session.posts[0]
    assert url == "https://oauth2.googleapis.com/token"
    assert data["grant_type"] == "refresh_token"
    assert data["refresh_token"] == "refresh-1"
    assert data["client_id"] == "client"
    assert data["client_secret"] == "secret"
    assert bundle.access_token == "new"
    assert bundle.refresh_token == "refresh-1"
    assert bundle.expires_at is not None


def test_outlook_refresh_sends_scope():
    session = _Session(_FakeResponse(200, {"access_token": "new", "refresh_token": "r2"}))
    provider = OutlookOAuthProvider("client", None, session=session)

    bundle = provider.refresh_tokens("r1")

    url, data = session.posts[0]
    assert url.endswith("/oauth2/v2.0/token")
    assert "offline_access" in data["scope"]
    assert "client_secret" not in data
    assert bundle.refresh_token == "r2"


@pytest.mark.parametrize(
    "session",
    [
        _Session(_FakeResponse(400, {"error": "invalid_grant"}, text="invalid_grant")),
        _Session(_FakeResponse(200, {"token_type": "Bearer"})),
        _Session(_FakeResponse(200, None)),
        _Session(error=requests.exceptions.ConnectionError("down")),
    ],
)
def test_google_refresh_failures_raise_token_refresh_error(session):
    provider = GoogleOAuthProvider("client", "secret", session=session)

    with pytest.raises(TokenRefreshError):
        provider.refresh_tokens("refresh-1")


def test_refresh_without_client_id_fails(monkeypatch):
    monkeypatch.setattr("mailsync.config.GMAIL_CLIENT_ID", None)
    provider = GoogleOAuthProvider(session=_Session(_FakeResponse(200, {"access_token": "x"})))

    with pytest.raises(TokenRefreshError):
        provider.refresh_tokens("refresh-1")


def test_authorization_url_contains_state_and_scopes():
    provider = GoogleOAuthProvider("client", "secret", session=_Session())

    url = provider.get_authorization_url("xyz")

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "state=xyz" in url
    assert "access_type=offline" in url
