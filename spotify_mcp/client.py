import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from spotify_mcp.errors import AuthorizationExpired, RemoteAPIError, TransportError
from spotify_mcp.session import HttpSession
from spotify_mcp.token_manager import TokenManager

logger = logging.getLogger(__name__)


class SpotifyClient:
    """Authenticated request executor for the Spotify Web API."""

    def __init__(self, tokens: TokenManager, http: HttpSession, api_base: str):
        self._tokens = tokens
        self._http = http
        self._api_base = api_base.rstrip("/")

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one Web API call with the current bearer token.

        Raises AuthenticationRequired when no token can be produced,
        AuthorizationExpired (after invalidating the token) when Spotify
        rejects it, RemoteAPIError for any other non-2xx response and
        TransportError when no response arrives at all.
        """
        token = await self._tokens.get_valid_token()

        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        url = f"{self._api_base}/{endpoint.lstrip('/')}"
        session = await self._http.get()

        logger.debug(f"Making authenticated request: {method} {url}")
        try:
            async with session.request(method=method, url=url, headers=headers, params=params, json=body) as response:
                if response.status == 204:
                    return {}

                if response.status == 401:
                    logger.warning(f"401 from Spotify for {method} {endpoint}; token rejected")
                    await self._tokens.invalidate()
                    raise AuthorizationExpired()

                if response.status >= 400:
                    body_text = await response.text()
                    logger.error(
                        "Spotify API error %s\n→ %s %s\n→ params=%s json=%s\n→ body=%s",
                        response.status, method, url, params, body, body_text[:800]
                    )
                    raise RemoteAPIError(response.status, _parse_body(body_text))

                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Network error calling {method} {url}: {e!r}")
            raise TransportError(f"Could not reach Spotify: {e or e.__class__.__name__}") from e

        # Some endpoints answer 200/201 with an empty or non-JSON body
        if not text.strip():
            return {}
        parsed = _parse_body(text)
        return parsed if isinstance(parsed, dict) else {"_raw": parsed}


def _parse_body(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text
