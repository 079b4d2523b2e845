from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from backend.app.core.exceptions import InvalidState, ReauthenticationRequired, TransientUpstreamError
from backend.app.db.models.core_types import AccountState
from backend.app.db.models.models_v1 import ExternalAccount
from backend.services.accounts import code_challenge_for
from backend.tests.fakes import FakeResponse


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _token_payload(access="access-2", refresh="refresh-2", user_id=555):
    return {"access_token": access, "refresh_token": refresh, "expires_in": 21600, "user_id": user_id}


# ---------- CONNECT ----------
def test_connect_builds_pkce_authorization_url(container):
    url = container.accounts.connect_account("u1")
    q = _query(url)

    assert q["client_id"] == "app-123"
    assert q["code_challenge_method"] == "S256"
    assert q["response_type"] == "code"
    assert q["state"]
    assert len(container.pkce_store) == 1


def test_complete_connect_with_unknown_state_raises(container):
    container.accounts.connect_account("u1")

    with pytest.raises(InvalidState):
        container.accounts.complete_connect("code-x", "not-a-known-state")


def test_complete_connect_creates_account_and_state_is_single_use(container, http):
    http.add("POST", "/oauth/token", FakeResponse(200, _token_payload()))
    http.add("GET", "/users/me", FakeResponse(200, {"id": 555, "nickname": "LOJA", "site_id": "MLB"}))

    q = _query(container.accounts.connect_account("u1"))
    state = q["state"]
    account = container.accounts.complete_connect("code-abc", state)

    assert account.external_user_id == "555"
    assert account.nickname == "LOJA"
    assert account.active is True
    assert account.access_token == "access-2"

    sent = http.calls_to("POST", "/oauth/token")[0].data
    assert sent["grant_type"] == "authorization_code"
    assert sent["code"] == "code-abc"
    # le verifier envoyé correspond au challenge de l'URL
    assert code_challenge_for(sent["code_verifier"]) == q["code_challenge"]

    # rejouer le callback : le state a été consommé
    with pytest.raises(InvalidState):
        container.accounts.complete_connect("code-abc", state)


def test_reconnect_updates_existing_account(container, http, make_account):
    existing = make_account(external_user_id="555", active=False)
    http.add("POST", "/oauth/token", FakeResponse(200, _token_payload(access="fresh")))
    http.add("GET", "/users/me", FakeResponse(200, {"id": 555}))

    state = _query(container.accounts.connect_account("u1"))["state"]
    account = container.accounts.complete_connect("code", state)

    assert account.id == existing.id
    assert account.active is True
    assert account.access_token == "fresh"


def test_expired_state_is_purged(container, clock):
    state = _query(container.accounts.connect_account("u1"))["state"]
    clock.advance(minutes=11)

    with pytest.raises(InvalidState):
        container.accounts.complete_connect("code", state)
    assert len(container.pkce_store) == 0


# ---------- TOKENS ----------
def test_valid_token_is_returned_without_network(container, http, make_account):
    acc = make_account()

    assert container.accounts.get_valid_token(acc.id) == "access-1"
    assert http.calls == []


def test_expired_token_is_refreshed_once(container, http, make_account, session_factory):
    acc = make_account(expires_in=timedelta(seconds=-1))
    http.add("POST", "/oauth/token", FakeResponse(200, _token_payload()))

    assert container.accounts.get_valid_token(acc.id) == "access-2"
    assert container.accounts.get_valid_token(acc.id) == "access-2"

    assert len(http.calls_to("POST", "/oauth/token")) == 1
    assert http.calls[0].data["grant_type"] == "refresh_token"
    with session_factory() as db:
        stored = db.get(ExternalAccount, acc.id)
        assert stored.refresh_token == "refresh-2"
        assert stored.active is True


def test_rejected_refresh_invalidates_account(container, http, make_account, session_factory):
    """
    GIVEN
    - un compte expiré dont le refresh token est révoqué (400 invalid_grant)

    THEN
    - ReauthenticationRequired, active=False
    - un second appel ne retente pas le refresh
    """
    acc = make_account(expires_in=timedelta(seconds=-1))
    http.add("POST", "/oauth/token", FakeResponse(400, {"error": "invalid_grant"}))

    with pytest.raises(ReauthenticationRequired):
        container.accounts.get_valid_token(acc.id)

    with session_factory() as db:
        assert db.get(ExternalAccount, acc.id).active is False
    assert container.accounts.account_state(acc.id) == AccountState.invalid

    with pytest.raises(ReauthenticationRequired):
        container.accounts.get_valid_token(acc.id)
    assert len(http.calls_to("POST", "/oauth/token")) == 1


def test_transient_refresh_failure_keeps_account_active(container, http, make_account, session_factory):
    acc = make_account(expires_in=timedelta(seconds=-1))
    http.add("POST", "/oauth/token", FakeResponse(503, {"message": "unavailable"}))

    with pytest.raises(TransientUpstreamError):
        container.accounts.get_valid_token(acc.id)

    with session_factory() as db:
        assert db.get(ExternalAccount, acc.id).active is True
    assert container.accounts.account_state(acc.id) == AccountState.active


def test_disconnect_deactivates(container, make_account):
    acc = make_account()

    container.accounts.disconnect_account(acc.id)

    assert container.accounts.list_active_accounts() == []
    with pytest.raises(ReauthenticationRequired):
        container.accounts.get_valid_token(acc.id)
