from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from pytest_httpx import HTTPXMock

from conftest import CLIENT_REDIRECT_URI, MICROSOFT_TOKEN_URL
from oauth.callback import handle_microsoft_oauth_callback
from oauth.stores import PendingAuthRequest, ServerTokenStore


def store_pending(token_store, client_state="client-state") -> str:
    return token_store.store_pending_request(PendingAuthRequest(
        client_id="client-1",
        code_challenge="challenge",
        code_challenge_method="S256",
        redirect_uri=CLIENT_REDIRECT_URI,
        client_state=client_state,
        scope="Notes.Read",
    ))


@pytest.fixture
def upstream(provider):
    return provider.upstream


async def test_unknown_state(upstream, token_store):
    result = await handle_microsoft_oauth_callback(upstream, token_store, "ms-code", "unknown-state")

    assert not result.ok
    assert result.error == "invalid_request"
    assert result.error_description == "Invalid or expired state parameter"


@pytest.mark.parametrize("code,state", [(None, "s"), ("c", None), ("", "")])
async def test_missing_code_or_state(upstream, token_store, code, state):
    result = await handle_microsoft_oauth_callback(upstream, token_store, code, state)

    assert result.error == "invalid_request"
    assert result.error_description == "Missing code or state parameter"


async def test_upstream_error_passthrough(upstream, token_store):
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, None, state,
        error="access_denied", error_description="The user declined",
    )

    assert result.error == "access_denied"
    assert result.error_description == "The user declined"
    # The pending request is left to expire
    assert token_store.stats()["pending_requests"] == 1


async def test_upstream_error_default_description(upstream, token_store):
    result = await handle_microsoft_oauth_callback(upstream, token_store, None, None, error="access_denied")
    assert result.error_description == "Authorization failed"


async def test_success_issues_code_and_redirects(upstream, token_store, persisted_tokens, httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        url=MICROSOFT_TOKEN_URL,
        method="POST",
        json={"access_token": "ms-access", "refresh_token": "ms-refresh", "expires_in": 3600},
    )
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=persisted_tokens.append
    )

    assert result.ok
    parts = urlsplit(result.redirect_url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == CLIENT_REDIRECT_URI
    query = parse_qs(parts.query)
    assert query["state"] == ["client-state"]

    entry = token_store.consume_auth_code(query["code"][0])
    assert entry.client_id == "client-1"
    assert entry.code_challenge == "challenge"
    assert entry.upstream_access_token == "ms-access"
    assert entry.upstream_refresh_token == "ms-refresh"
    assert entry.scope == "Notes.Read"

    assert [t.access_token for t in persisted_tokens] == ["ms-access"]

    form = parse_qs(httpx_mock.get_request().content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["ms-code"]
    assert form["redirect_uri"] == ["http://localhost:3001/oauth/callback"]


async def test_state_is_single_use(upstream, token_store, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json={"access_token": "ms-access"})
    state = store_pending(token_store)

    first = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=lambda tokens: None
    )
    replay = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=lambda tokens: None
    )

    assert first.ok
    assert replay.error == "invalid_request"


async def test_falls_back_to_internal_state(upstream, token_store, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json={"access_token": "ms-access"})
    state = store_pending(token_store, client_state=None)

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=lambda tokens: None
    )

    assert parse_qs(urlsplit(result.redirect_url).query)["state"] == [state]


async def test_keeps_existing_redirect_query(upstream, httpx_mock: HTTPXMock, clock):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json={"access_token": "ms-access"})
    token_store = ServerTokenStore(cleanup_interval=None, clock=clock)
    state = token_store.store_pending_request(PendingAuthRequest(
        client_id="client-1",
        code_challenge="challenge",
        code_challenge_method="S256",
        redirect_uri="http://localhost:6274/cb?tenant=a",
    ))

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=lambda tokens: None
    )

    query = parse_qs(urlsplit(result.redirect_url).query)
    assert query["tenant"] == ["a"]
    assert "code" in query


async def test_upstream_http_error(upstream, token_store, httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        url=MICROSOFT_TOKEN_URL,
        method="POST",
        status_code=400,
        text='{"error":"invalid_grant","error_description":"AADSTS54005: code already redeemed"}',
    )
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(upstream, token_store, "ms-code", state)

    assert result.error == "server_error"
    assert result.error_description == "Failed to exchange authorization code with Microsoft"
    assert token_store.stats()["auth_codes"] == 0


async def test_upstream_unreachable(upstream, token_store, httpx_mock: HTTPXMock):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=MICROSOFT_TOKEN_URL)
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(upstream, token_store, "ms-code", state)

    assert result.error == "server_error"
    assert result.error_description == "Failed to communicate with Microsoft"


@pytest.mark.parametrize("payload", [
    {"access_token": "ms-access", "expires_in": "soon"},
    {"access_token": "ms-access", "expires_in": [3600]},
    {"refresh_token": "ms-refresh"},
])
async def test_malformed_token_response(upstream, token_store, httpx_mock: HTTPXMock, payload):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json=payload)
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(upstream, token_store, "ms-code", state)

    assert result.error == "server_error"
    assert result.error_description == "Failed to communicate with Microsoft"
    assert token_store.stats()["auth_codes"] == 0


async def test_persist_failure_is_not_fatal(upstream, token_store, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json={"access_token": "ms-access"})
    state = store_pending(token_store)

    def fail(tokens):
        raise OSError("read-only file system")

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=fail
    )

    assert result.ok


async def test_auth_code_capacity(upstream, httpx_mock: HTTPXMock, clock):
    httpx_mock.add_response(url=MICROSOFT_TOKEN_URL, method="POST", json={"access_token": "ms-access"})
    token_store = ServerTokenStore(cleanup_interval=None, max_auth_codes=0, clock=clock)
    state = store_pending(token_store)

    result = await handle_microsoft_oauth_callback(
        upstream, token_store, "ms-code", state, persist_tokens=lambda tokens: None
    )

    assert result.error == "capacity_exceeded"
