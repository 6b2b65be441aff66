"""Shared fakes and fixtures: a local fake of the Spotify accounts/Web API hosts."""

import asyncio
import socket
from typing import Any, Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from spotify_mcp.config import Settings
from spotify_mcp.session import HttpSession
from spotify_mcp.token_manager import TokenManager
from spotify_mcp.token_store import TokenRecord, TokenStore

NOW = 1_700_000_000_000


# ── Fakes ───────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class RecordingStore(TokenStore):
    """TokenStore that counts disk reads and writes."""

    def __init__(self, path):
        super().__init__(path)
        self.loads = 0
        self.saves: List[TokenRecord] = []

    def load(self) -> Optional[TokenRecord]:
        self.loads += 1
        return super().load()

    def save(self, record: TokenRecord) -> bool:
        self.saves.append(record)
        return super().save(record)

    def reset_counters(self) -> None:
        self.loads = 0
        self.saves = []


class FakeSpotify:
    """Token endpoint plus Web API, recording every request it receives."""

    def __init__(self):
        self.token_requests: List[Dict[str, Any]] = []
        self.token_response: Tuple[int, Any] = (200, {"access_token": "new-access", "expires_in": 3600})
        self.token_delay = 0.0
        self.api_requests: List[Dict[str, Any]] = []
        self.api_responses: Dict[Tuple[str, str], Tuple[int, Any]] = {}
        self.base_url = ""

        self.app = web.Application()
        self.app.router.add_post("/api/token", self._token)
        self.app.router.add_route("*", "/v1/{tail:.*}", self._api)

    def respond(self, method: str, path: str, status: int = 200, payload: Any = None) -> None:
        self.api_responses[(method, path)] = (status, payload)

    async def _token(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.token_requests.append({
            "form": dict(form),
            "authorization": request.headers.get("Authorization"),
        })
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        status, body = self.token_response
        return web.json_response(body, status=status)

    async def _api(self, request: web.Request) -> web.Response:
        path = "/" + request.match_info["tail"]
        body = await request.json() if request.can_read_body else None
        self.api_requests.append({
            "method": request.method,
            "path": path,
            "query": dict(request.query),
            "json": body,
            "authorization": request.headers.get("Authorization"),
        })
        status, payload = self.api_responses.get(
            (request.method, path),
            (404, {"error": {"status": 404, "message": "Non existing id"}}),
        )
        if status == 204:
            return web.Response(status=204)
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def unused_url() -> str:
    """URL on a local port nothing listens on."""
    return f"http://127.0.0.1:{free_port()}"


# ── Shared fixtures ─────────────────────────────────────────────────


@pytest.fixture
async def fake_spotify():
    fake = FakeSpotify()
    server = TestServer(fake.app)
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path, fake_spotify):
    return Settings(
        client_id="test-client-id",
        client_secret="test-client-secret",
        auth_port=free_port(),
        auth_timeout=5,
        token_path=tmp_path / "spotify-mcp" / "tokens.json",
        api_base=f"{fake_spotify.base_url}/v1",
        accounts_base=fake_spotify.base_url,
    )


@pytest.fixture
def store(settings):
    return RecordingStore(settings.token_path)


@pytest.fixture
async def http():
    holder = HttpSession(timeout=5)
    yield holder
    await holder.close()


@pytest.fixture
def tokens(settings, store, http, clock):
    return TokenManager(
        store,
        http,
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        token_url=settings.token_url,
        clock=clock,
    )


@pytest.fixture
def seed_tokens(tokens, store):
    """Put a record in memory (via the store) and forget the setup I/O."""

    def seed(access: Optional[str], refresh: Optional[str], expires_at: int) -> None:
        store.save(TokenRecord(access, refresh, expires_at))
        tokens.load_persisted()
        store.reset_counters()

    return seed
