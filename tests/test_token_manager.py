"""Token lifecycle: freshness, refresh, failure and invalidation."""

import asyncio
import base64

import pytest

from conftest import NOW, unused_url
from spotify_mcp.errors import AuthenticationRequired, AuthorizationFlowError
from spotify_mcp.token_manager import TokenManager
from spotify_mcp.token_store import TokenRecord


async def test_fresh_token_is_returned_without_any_io(tokens, store, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW + 3_600_000)

    assert await tokens.get_valid_token() == "A"
    assert fake_spotify.token_requests == []
    assert store.loads == 0
    assert store.saves == []


async def test_expired_token_is_refreshed_and_refresh_token_kept(tokens, store, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)
    fake_spotify.token_response = (200, {"access_token": "B", "expires_in": 3600})

    assert await tokens.get_valid_token() == "B"

    assert tokens.record == TokenRecord("B", "R", NOW + 3_600_000)
    assert len(fake_spotify.token_requests) == 1
    assert fake_spotify.token_requests[0]["form"] == {"grant_type": "refresh_token", "refresh_token": "R"}
    assert store.load() == TokenRecord("B", "R", NOW + 3_600_000)


async def test_token_inside_safety_margin_is_refreshed(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW + 30_000)

    token = await tokens.get_valid_token()

    assert token == "new-access"
    assert tokens.record.expires_at > NOW + 30_000
    assert len(fake_spotify.token_requests) == 1


async def test_rotated_refresh_token_replaces_the_old_one(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)
    fake_spotify.token_response = (200, {"access_token": "B", "refresh_token": "R2", "expires_in": 60})

    await tokens.get_valid_token()

    assert tokens.record.refresh_token == "R2"


async def test_refresh_uses_basic_client_credentials(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)

    await tokens.get_valid_token()

    expected = base64.b64encode(b"test-client-id:test-client-secret").decode("ascii")
    assert fake_spotify.token_requests[0]["authorization"] == f"Basic {expected}"


async def test_rejected_refresh_clears_everything(tokens, store, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)
    fake_spotify.token_response = (400, {"error": "invalid_grant", "error_description": "Refresh token revoked"})

    with pytest.raises(AuthenticationRequired):
        await tokens.get_valid_token()

    assert tokens.record == TokenRecord(None, None, 0)
    assert store.saves[-1] == TokenRecord(None, None, 0)
    assert store.load() is None


async def test_malformed_refresh_response_clears_everything(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)
    fake_spotify.token_response = (200, {"token_type": "Bearer"})

    with pytest.raises(AuthenticationRequired):
        await tokens.get_valid_token()

    assert tokens.record == TokenRecord(None, None, 0)


async def test_unreachable_token_endpoint_clears_everything(settings, store, http, clock):
    store.save(TokenRecord("A", "R", clock.now - 1000))
    tokens = TokenManager(store, http, "id", "secret", token_url=f"{unused_url()}/api/token", clock=clock)

    with pytest.raises(AuthenticationRequired):
        await tokens.get_valid_token()

    assert tokens.record == TokenRecord(None, None, 0)


async def test_no_tokens_anywhere_requires_authentication(tokens, fake_spotify):
    with pytest.raises(AuthenticationRequired):
        await tokens.get_valid_token()

    assert fake_spotify.token_requests == []


async def test_cold_start_reuses_login_from_another_process(tokens, store, fake_spotify):
    store.save(TokenRecord("shared", "R", NOW + 3_600_000))

    assert await tokens.get_valid_token() == "shared"
    assert fake_spotify.token_requests == []


async def test_cold_start_refreshes_stale_persisted_login(tokens, store, fake_spotify):
    store.save(TokenRecord("old", "R", NOW - 5000))

    assert await tokens.get_valid_token() == "new-access"
    assert fake_spotify.token_requests[0]["form"]["refresh_token"] == "R"


async def test_concurrent_callers_share_one_refresh(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW - 1000)
    fake_spotify.token_delay = 0.05

    results = await asyncio.gather(*(tokens.get_valid_token() for _ in range(3)))

    assert results == ["new-access"] * 3
    assert len(fake_spotify.token_requests) == 1


async def test_invalidate_clears_and_persists(tokens, store, seed_tokens):
    seed_tokens("A", "R", NOW + 3_600_000)

    await tokens.invalidate()

    assert tokens.record == TokenRecord(None, None, 0)
    assert store.load() is None
    with pytest.raises(AuthenticationRequired):
        await tokens.get_valid_token()


async def test_exchange_code_stores_the_new_pair(tokens, store, fake_spotify):
    fake_spotify.token_response = (200, {"access_token": "X", "refresh_token": "Y", "expires_in": 3600})

    record = await tokens.exchange_code("the-code", "http://127.0.0.1:8888/callback")

    assert record == TokenRecord("X", "Y", NOW + 3_600_000)
    assert store.load() == record
    assert fake_spotify.token_requests[0]["form"] == {
        "grant_type": "authorization_code",
        "code": "the-code",
        "redirect_uri": "http://127.0.0.1:8888/callback",
    }


async def test_failed_exchange_keeps_previous_state(tokens, seed_tokens, fake_spotify):
    seed_tokens("A", "R", NOW + 3_600_000)
    fake_spotify.token_response = (400, {"error": "invalid_grant", "error_description": "Invalid redirect URI"})

    with pytest.raises(AuthorizationFlowError, match="Token exchange failed"):
        await tokens.exchange_code("bad-code", "http://127.0.0.1:1/callback")

    assert tokens.record == TokenRecord("A", "R", NOW + 3_600_000)


async def test_is_authenticated_reflects_usable_credentials(tokens, seed_tokens, clock):
    assert tokens.is_authenticated is False

    seed_tokens("A", None, NOW + 3_600_000)
    assert tokens.is_authenticated is True

    clock.now = NOW + 3_600_000
    assert tokens.is_authenticated is False
