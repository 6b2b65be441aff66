import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from spotify_mcp.errors import ConfigurationError


# -----------------------------------------------------------------------------
# Spotify API constants
# -----------------------------------------------------------------------------

SPOTIFY_API_BASE = "https://api.spotify.com/v1"
SPOTIFY_ACCOUNTS_BASE = "https://accounts.spotify.com"

DEFAULT_AUTH_HOST = "127.0.0.1"
DEFAULT_AUTH_PORT = 8888
DEFAULT_AUTH_TIMEOUT = 300.0
DEFAULT_TOKEN_PATH = Path.home() / ".spotify-mcp" / "tokens.json"

SCOPES = (
    "user-read-private",
    "user-read-email",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "playlist-read-private",
    "playlist-modify-private",
    "playlist-modify-public",
    "user-library-read",
    "user-top-read",
)

REQUIRED_VARS = ("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET")


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup."""

    client_id: str
    client_secret: str
    auth_host: str = DEFAULT_AUTH_HOST
    auth_port: int = DEFAULT_AUTH_PORT
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    token_path: Path = DEFAULT_TOKEN_PATH
    api_base: str = SPOTIFY_API_BASE
    accounts_base: str = SPOTIFY_ACCOUNTS_BASE

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.auth_host}:{self.auth_port}/callback"

    @property
    def login_url(self) -> str:
        return f"http://{self.auth_host}:{self.auth_port}/login"

    @property
    def token_url(self) -> str:
        return f"{self.accounts_base.rstrip('/')}/api/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.accounts_base.rstrip('/')}/authorize"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the environment (after loading a .env file when
        reading the real process environment).
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        missing = [name for name in REQUIRED_VARS if not environ.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}. "
                "Please set these variables in your .env file or environment."
            )

        token_path = environ.get("SPOTIFY_TOKEN_PATH")
        return cls(
            client_id=environ["SPOTIFY_CLIENT_ID"],
            client_secret=environ["SPOTIFY_CLIENT_SECRET"],
            auth_host=environ.get("SPOTIFY_AUTH_HOST", DEFAULT_AUTH_HOST),
            auth_port=_parse_number(environ, "SPOTIFY_AUTH_PORT", int, DEFAULT_AUTH_PORT),
            auth_timeout=_parse_number(environ, "SPOTIFY_AUTH_TIMEOUT", float, DEFAULT_AUTH_TIMEOUT),
            token_path=Path(token_path).expanduser() if token_path else DEFAULT_TOKEN_PATH,
            api_base=environ.get("SPOTIFY_API_BASE", SPOTIFY_API_BASE),
            accounts_base=environ.get("SPOTIFY_ACCOUNTS_BASE", SPOTIFY_ACCOUNTS_BASE),
        )


def _parse_number(environ: Mapping[str, str], name: str, kind, default):
    raw = environ.get(name)
    if not raw:
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
