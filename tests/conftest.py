import contextlib

import anyio
import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse

from config import ServerConfig
from oauth.provider import ProxyOAuthProvider
from oauth.stores import ServerTokenStore
from oauth.upstream import MicrosoftIdentityClient

MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
CLIENT_REDIRECT_URI = "http://localhost:6274/oauth/callback"


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(
        host="127.0.0.1",
        port=3001,
        issuer_url="http://localhost:3001",
        microsoft_client_id="ms-client-id",
        microsoft_client_secret="ms-client-secret",
        microsoft_redirect_uri="http://localhost:3001/oauth/callback",
    )


@pytest.fixture
def token_store(clock):
    store = ServerTokenStore(cleanup_interval=None, clock=clock)
    yield store
    store.dispose()


@pytest.fixture
def persisted_tokens() -> list:
    return []


@pytest.fixture
def provider(server_config, token_store, persisted_tokens) -> ProxyOAuthProvider:
    return ProxyOAuthProvider(
        server_config,
        token_store,
        upstream=MicrosoftIdentityClient(server_config, timeout=1.0),
        persist_tokens=persisted_tokens.append,
    )


@pytest.fixture
def client(provider) -> dict:
    """A registered public MCP client."""
    return provider.clients_store.register_client({
        "redirect_uris": [CLIENT_REDIRECT_URI],
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "none",
    })


class FakeTransport:
    """Implements the slice of the streamable HTTP transport the registry uses."""

    def __init__(self, session_id: str):
        self.mcp_session_id = session_id
        self.is_terminated = False
        self.requests = []
        self.auth = []
        self._closed = anyio.Event()

    @contextlib.asynccontextmanager
    async def connect(self):
        yield self._closed, self._closed

    async def handle_request(self, scope, receive, send):
        request = Request(scope, receive)
        body = await request.body()
        self.requests.append((request.method, body))
        self.auth.append(scope.get("auth"))
        if request.method == "DELETE":
            await self.terminate()
        response = JSONResponse(
            {"handled_by": self.mcp_session_id, "method": request.method},
            headers={"mcp-session-id": self.mcp_session_id},
        )
        await response(scope, receive, send)

    async def terminate(self):
        self.is_terminated = True
        self._closed.set()


class FakeServer:
    def create_initialization_options(self):
        return None

    async def run(self, read_stream, write_stream, options):
        # Runs until the transport is terminated
        await read_stream.wait()


class TransportRecorder:
    def __init__(self, transport_class=FakeTransport):
        self.transport_class = transport_class
        self.transports = {}

    def __call__(self, session_id):
        transport = self.transport_class(session_id)
        self.transports[session_id] = transport
        return transport


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()
