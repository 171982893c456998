import threading

import pytest

from oauth.errors import CapacityExceededError
from oauth.stores import (
    ACCESS_TOKEN_EXPIRY_SECONDS,
    AUTH_CODE_EXPIRY_SECONDS,
    PENDING_REQUEST_EXPIRY_SECONDS,
    REFRESH_TOKEN_EXPIRY_SECONDS,
    AuthCodeEntry,
    PendingAuthRequest,
    RefreshTokenEntry,
    RegisteredClientsStore,
    ServerTokenStore,
    TokenEntry,
)


def make_pending(**overrides) -> PendingAuthRequest:
    values = dict(
        client_id="client-1",
        code_challenge="challenge",
        code_challenge_method="S256",
        redirect_uri="http://localhost/cb",
        client_state="client-state",
    )
    values.update(overrides)
    return PendingAuthRequest(**values)


def make_code_entry(**overrides) -> AuthCodeEntry:
    values = dict(
        client_id="client-1",
        code_challenge="challenge",
        code_challenge_method="S256",
        redirect_uri="http://localhost/cb",
        upstream_access_token="ms-access",
        upstream_refresh_token="ms-refresh",
    )
    values.update(overrides)
    return AuthCodeEntry(**values)


class TestPendingRequests:
    def test_consume_returns_entry_once(self, token_store):
        state = token_store.store_pending_request(make_pending())

        request = token_store.consume_pending_request(state)
        assert request is not None
        assert request.client_id == "client-1"
        assert request.client_state == "client-state"

        assert token_store.consume_pending_request(state) is None

    def test_states_are_unique_and_unguessable(self, token_store):
        states = {token_store.store_pending_request(make_pending()) for _ in range(50)}
        assert len(states) == 50
        assert all(len(state) >= 43 for state in states)

    def test_expired_request_is_not_returned(self, token_store, clock):
        state = token_store.store_pending_request(make_pending())
        clock.advance(PENDING_REQUEST_EXPIRY_SECONDS + 1)

        assert token_store.consume_pending_request(state) is None
        assert token_store.stats()["pending_requests"] == 0

    def test_request_at_exact_expiry_is_still_valid(self, token_store, clock):
        state = token_store.store_pending_request(make_pending())
        clock.advance(PENDING_REQUEST_EXPIRY_SECONDS)

        assert token_store.consume_pending_request(state) is not None

    def test_unknown_state(self, token_store):
        assert token_store.consume_pending_request("nope") is None


class TestAuthCodes:
    def test_consume_twice(self, token_store):
        code = token_store.store_auth_code(make_code_entry())

        first = token_store.consume_auth_code(code)
        assert first is not None
        assert first.upstream_access_token == "ms-access"
        assert token_store.consume_auth_code(code) is None

    def test_get_does_not_consume(self, token_store):
        code = token_store.store_auth_code(make_code_entry())

        assert token_store.get_auth_code(code) is not None
        assert token_store.get_auth_code(code) is not None
        assert token_store.consume_auth_code(code) is not None

    def test_store_sets_expiry(self, token_store, clock):
        code = token_store.store_auth_code(make_code_entry())
        entry = token_store.get_auth_code(code)

        assert entry.created_at == clock.now
        assert entry.expires_at == clock.now + AUTH_CODE_EXPIRY_SECONDS

    def test_lazy_expiry(self, token_store, clock):
        code = token_store.store_auth_code(make_code_entry())
        clock.advance(AUTH_CODE_EXPIRY_SECONDS + 1)

        assert token_store.get_auth_code(code) is None
        assert token_store.consume_auth_code(code) is None

    def test_concurrent_consume_succeeds_once(self, token_store):
        code = token_store.store_auth_code(make_code_entry())
        results = []
        barrier = threading.Barrier(8)

        def redeem():
            barrier.wait()
            results.append(token_store.consume_auth_code(code))

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r is not None) == 1


class TestAccessTokens:
    def test_store_and_get(self, token_store):
        token, expires_in = token_store.store_access_token(
            TokenEntry(upstream_access_token="ms-access", client_id="client-1", scope="a b")
        )

        assert expires_in == ACCESS_TOKEN_EXPIRY_SECONDS
        entry = token_store.get_access_token(token)
        assert entry.client_id == "client-1"
        assert entry.scope == "a b"

    def test_lazy_expiry(self, token_store, clock):
        token, _ = token_store.store_access_token(TokenEntry(upstream_access_token="ms-access"))
        clock.advance(ACCESS_TOKEN_EXPIRY_SECONDS + 1)

        assert token_store.get_access_token(token) is None
        assert token_store.stats()["access_tokens"] == 0

    def test_revoke(self, token_store):
        token, _ = token_store.store_access_token(TokenEntry(upstream_access_token="ms-access"))

        assert token_store.revoke_access_token(token) is True
        assert token_store.get_access_token(token) is None
        assert token_store.revoke_access_token(token) is False


class TestRefreshTokens:
    def test_store_get_revoke(self, token_store):
        token = token_store.store_refresh_token(
            RefreshTokenEntry(upstream_refresh_token="ms-refresh", client_id="client-1")
        )

        assert token_store.get_refresh_token(token).upstream_refresh_token == "ms-refresh"
        assert token_store.revoke_refresh_token(token) is True
        assert token_store.get_refresh_token(token) is None

    def test_lazy_expiry(self, token_store, clock):
        token = token_store.store_refresh_token(RefreshTokenEntry(upstream_refresh_token="ms-refresh"))
        clock.advance(REFRESH_TOKEN_EXPIRY_SECONDS + 1)

        assert token_store.get_refresh_token(token) is None


class TestCleanup:
    def test_cleanup_removes_expired_entries_from_all_maps(self, token_store, clock):
        token_store.store_pending_request(make_pending())
        token_store.store_auth_code(make_code_entry())
        token_store.store_access_token(TokenEntry(upstream_access_token="ms-access"))
        token_store.store_refresh_token(RefreshTokenEntry(upstream_refresh_token="ms-refresh"))

        clock.advance(ACCESS_TOKEN_EXPIRY_SECONDS + 1)
        removed = token_store.cleanup()

        # Refresh tokens live for 30 days
        assert removed == 3
        assert token_store.stats() == {
            "pending_requests": 0,
            "auth_codes": 0,
            "access_tokens": 0,
            "refresh_tokens": 1,
        }

    def test_cleanup_keeps_live_entries(self, token_store):
        token, _ = token_store.store_access_token(TokenEntry(upstream_access_token="ms-access"))

        assert token_store.cleanup() == 0
        assert token_store.get_access_token(token) is not None


class TestCapacity:
    def test_pending_request_cap(self, clock):
        store = ServerTokenStore(cleanup_interval=None, max_pending_requests=2, clock=clock)
        store.store_pending_request(make_pending())
        store.store_pending_request(make_pending())

        with pytest.raises(CapacityExceededError, match="Too many pending authorization requests"):
            store.store_pending_request(make_pending())
        assert store.stats()["pending_requests"] == 2

    def test_auth_code_cap(self, clock):
        store = ServerTokenStore(cleanup_interval=None, max_auth_codes=1, clock=clock)
        store.store_auth_code(make_code_entry())

        with pytest.raises(CapacityExceededError, match="Too many authorization codes"):
            store.store_auth_code(make_code_entry())
        assert store.stats()["auth_codes"] == 1

    def test_access_token_cap(self, clock):
        store = ServerTokenStore(cleanup_interval=None, max_access_tokens=1, clock=clock)
        store.store_access_token(TokenEntry(upstream_access_token="a"))

        with pytest.raises(CapacityExceededError, match="Too many access tokens"):
            store.store_access_token(TokenEntry(upstream_access_token="b"))
        assert store.stats()["access_tokens"] == 1

    def test_refresh_token_cap(self, clock):
        store = ServerTokenStore(cleanup_interval=None, max_refresh_tokens=1, clock=clock)
        store.store_refresh_token(RefreshTokenEntry(upstream_refresh_token="a"))

        with pytest.raises(CapacityExceededError, match="Too many refresh tokens"):
            store.store_refresh_token(RefreshTokenEntry(upstream_refresh_token="b"))
        assert store.stats()["refresh_tokens"] == 1

    def test_capacity_error_wire_shape(self):
        error = CapacityExceededError("Too many access tokens")
        assert error.status_code == 503
        assert error.to_response_dict() == {
            "error": "capacity_exceeded",
            "error_description": "Too many access tokens",
        }


class TestDispose:
    def test_dispose_stops_cleanup_thread(self):
        store = ServerTokenStore(cleanup_interval=60)
        thread = store._cleanup_thread
        assert thread.is_alive()

        store.dispose()
        assert not thread.is_alive()

    def test_dispose_is_idempotent(self):
        store = ServerTokenStore(cleanup_interval=60)
        store.dispose()
        store.dispose()

    def test_no_thread_when_cleanup_disabled(self, token_store):
        assert token_store._cleanup_thread is None


class TestRegisteredClients:
    def test_register_and_get(self, clock):
        clients = RegisteredClientsStore(clock=clock)
        client = clients.register_client({"redirect_uris": ["http://localhost/cb"]})

        assert client["client_id"]
        assert client["client_id_issued_at"] == int(clock.now)
        assert clients.get_client(client["client_id"]) == client

    def test_unknown_client(self):
        assert RegisteredClientsStore().get_client("missing") is None
