import asyncio
import logging
import sys
from typing import Any, Dict, List

import click
import mcp.types as types
from mcp.server.lowlevel import Server

from spotify_mcp import __version__
from spotify_mcp.auth_flow import AuthorizationFlow
from spotify_mcp.client import SpotifyClient
from spotify_mcp.config import Settings
from spotify_mcp.errors import ConfigurationError
from spotify_mcp.session import HttpSession
from spotify_mcp.token_manager import TokenManager
from spotify_mcp.token_store import TokenStore
from spotify_mcp.tools import ToolRegistry

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Object graph
# -----------------------------------------------------------------------------

class Application:
    """Everything one server process needs, built once and shared by reference."""

    def __init__(self, settings: Settings, **auth_options: Any):
        self.settings = settings
        self.http = HttpSession()
        self.store = TokenStore(settings.token_path)
        self.tokens = TokenManager(
            self.store,
            self.http,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            token_url=settings.token_url,
        )
        self.client = SpotifyClient(self.tokens, self.http, settings.api_base)
        self.auth_flow = AuthorizationFlow(settings, self.tokens, self.http, **auth_options)
        self.registry = ToolRegistry(self.client, self.auth_flow)

    async def aclose(self) -> None:
        await self.auth_flow.close()
        await self.http.close()


# -----------------------------------------------------------------------------
# Build server and wire tool handlers
# -----------------------------------------------------------------------------

def build_server(registry: ToolRegistry) -> Server:
    server = Server("spotify-mcp", version=__version__)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return registry.definitions()

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
        text = await registry.call(name, arguments)
        return [types.TextContent(type="text", text=text)]

    return server


def restore_login(app: Application) -> bool:
    """Pick up a login persisted by an earlier run. Returns True when it is still usable."""
    app.tokens.load_persisted()
    if app.tokens.is_authenticated:
        logger.info(f"Tokens loaded from {app.settings.token_path}")
        return True
    logger.info(f"No usable tokens at {app.settings.token_path}, will need to authenticate")
    return False


async def run_stdio_server(app: Application) -> None:
    import mcp.server.stdio

    server = build_server(app.registry)
    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            logger.info("Spotify MCP Server running on stdio")
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        logger.info("Shutting down...")
        await app.aclose()


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------

@click.command()
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
def main(log_level: str):
    """Spotify MCP Server - Control Spotify from any MCP client over stdio."""
    # stdout carries the MCP stream, so every log line goes to stderr
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    app = Application(settings)
    restore_login(app)

    try:
        asyncio.run(run_stdio_server(app))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
