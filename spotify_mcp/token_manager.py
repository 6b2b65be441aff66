import asyncio
import base64
import logging
from dataclasses import replace
from typing import Any, Callable, Dict

import aiohttp

from spotify_mcp.errors import AuthenticationRequired, AuthorizationFlowError, RemoteAPIError
from spotify_mcp.session import HttpSession
from spotify_mcp.token_store import TokenRecord, TokenStore, now_ms

logger = logging.getLogger(__name__)


class TokenManager:
    """
    The one authoritative copy of this process's Spotify tokens.

    Hands out a usable access token, refreshing it through the token endpoint
    when it is within a minute of expiry, and writes every change back to the
    shared TokenStore so other processes pick up the same login.
    """

    def __init__(
        self,
        store: TokenStore,
        http: HttpSession,
        client_id: str,
        client_secret: str,
        token_url: str,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._http = http
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._clock = clock
        self._record = TokenRecord()
        self._lock = asyncio.Lock()

    @property
    def record(self) -> TokenRecord:
        return replace(self._record)

    @property
    def is_authenticated(self) -> bool:
        return self._record.is_fresh(self._clock()) or bool(self._record.refresh_token)

    def load_persisted(self) -> bool:
        """Adopt the persisted record if one exists. Returns True when loaded."""
        record = self._store.load()
        if record is None:
            return False
        self._record = record
        return True

    async def get_valid_token(self) -> str:
        async with self._lock:
            now = self._clock()
            if self._record.is_fresh(now):
                return self._record.access_token

            if self._record.is_empty:
                # another process may have logged in or refreshed meanwhile
                if self.load_persisted():
                    logger.info("Loaded tokens persisted by another session")
                    if self._record.is_fresh(now):
                        return self._record.access_token

            if self._record.refresh_token:
                return await self._refresh()

            raise AuthenticationRequired()

    async def _refresh(self) -> str:
        data = {"grant_type": "refresh_token", "refresh_token": self._record.refresh_token}
        try:
            token_data = await self._post_token(data)
            access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 3600))
        except (RemoteAPIError, aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error refreshing token: {e}")
            self._clear()
            raise AuthenticationRequired(
                "Token refresh failed. Please authenticate with Spotify again."
            ) from e

        self._record = TokenRecord(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or self._record.refresh_token,
            expires_at=self._clock() + expires_in * 1000,
        )
        self._store.save(self._record)
        logger.info(f"Token refreshed successfully, new token expires in {expires_in} seconds")
        return access_token

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenRecord:
        """Trade an authorization code for a fresh token pair and persist it."""
        data = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        async with self._lock:
            try:
                token_data = await self._post_token(data)
                record = TokenRecord(
                    access_token=token_data["access_token"],
                    refresh_token=token_data.get("refresh_token"),
                    expires_at=self._clock() + int(token_data.get("expires_in", 3600)) * 1000,
                )
            except (RemoteAPIError, aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Error getting tokens: {e}")
                raise AuthorizationFlowError(f"Token exchange failed: {e}") from e

            self._record = record
            self._store.save(record)
            logger.info("Token exchange successful")
            return replace(record)

    async def invalidate(self) -> None:
        async with self._lock:
            logger.warning("Access token was rejected, clearing tokens")
            self._clear()

    def _clear(self) -> None:
        self._record = TokenRecord()
        self._store.save(self._record)

    async def _post_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        auth_string = f"{self._client_id}:{self._client_secret}"
        auth_b64 = base64.b64encode(auth_string.encode("ascii")).decode("ascii")
        headers = {"Authorization": f"Basic {auth_b64}", "Content-Type": "application/x-www-form-urlencoded"}

        session = await self._http.get()
        async with session.post(self._token_url, headers=headers, data=data) as response:
            if response.status != 200:
                text = await response.text()
                raise RemoteAPIError(response.status, text, f"Token endpoint returned {response.status}: {text[:200]}")
            token_data = await response.json(content_type=None)
            if not isinstance(token_data, dict):
                raise ValueError("token endpoint returned a non-object body")
            return token_data
