import asyncio
import atexit
import contextlib
import enum
import errno
import html
import logging
import socket
import sys
import webbrowser
from typing import Callable, Optional
from urllib.parse import urlencode

import aiohttp
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from starlette.routing import Route

from spotify_mcp.config import SCOPES, Settings
from spotify_mcp.errors import AuthorizationFlowError, ServerAlreadyRunning
from spotify_mcp.session import HttpSession
from spotify_mcp.token_manager import TokenManager

logger = logging.getLogger(__name__)


class AuthState(enum.Enum):
    IDLE = "idle"
    LISTENER_STARTING = "listener_starting"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


class AuthOutcome(enum.Enum):
    AUTHENTICATED = "authenticated"
    # the login page of another process's listener was opened instead
    DELEGATED = "delegated"


class _CallbackServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handling alone."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _page(title: str, message: str) -> str:
    return (
        f"<html><head><title>{html.escape(title)}</title></head>"
        f"<body><h2>{html.escape(title)}</h2><p>{html.escape(message)}</p></body></html>"
    )


class AuthorizationFlow:
    """
    Drives the OAuth authorization-code login through a local callback listener.

    Only one login may be pending per process; a second request while one is
    open re-opens the login page and waits on the same pending operation. When
    the well-known port belongs to another process, the login is handed to that
    process's listener if it answers on /login, otherwise ServerAlreadyRunning
    is raised.
    """

    def __init__(
        self,
        settings: Settings,
        tokens: TokenManager,
        http: HttpSession,
        browser_opener: Callable[[str], bool] = webbrowser.open,
        probe_timeout: float = 2.0,
    ):
        self._settings = settings
        self._tokens = tokens
        self._http = http
        self._browser_opener = browser_opener
        self._probe_timeout = probe_timeout

        self.state = AuthState.IDLE
        self._pending: Optional[asyncio.Future] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[_CallbackServer] = None
        self._serve_task: Optional[asyncio.Task] = None

    @property
    def listening(self) -> bool:
        return self._server is not None

    async def authenticate(self) -> AuthOutcome:
        login_url = self._settings.login_url

        if self._pending is not None and not self._pending.done():
            logger.info("Auth server is already running, opening login page")
            await self._open_browser(login_url)
            await self._wait_for_callback(self._pending)
            return AuthOutcome.AUTHENTICATED

        self.state = AuthState.LISTENER_STARTING
        try:
            sock = self._bind()
        except OSError as e:
            if e.errno != errno.EADDRINUSE:
                self.state = AuthState.FAILED
                raise AuthorizationFlowError(f"Could not start auth server: {e}") from e
            self.state = AuthState.IDLE
            return await self._delegate()

        pending = asyncio.get_running_loop().create_future()
        self._pending = pending
        try:
            await self._start_listener(sock)
            self.state = AuthState.AWAITING_CALLBACK
            logger.info(f"Auth server listening at http://{self._settings.auth_host}:{self._settings.auth_port}")
            if not await self._open_browser(login_url):
                logger.warning(f"Could not open a browser, visit {login_url} to log in")
            await self._wait_for_callback(pending)
            return AuthOutcome.AUTHENTICATED
        finally:
            if not pending.done():
                self.state = AuthState.FAILED
                pending.set_exception(AuthorizationFlowError("Authentication was cancelled"))
                # retrieved here so an unobserved failure is not reported by asyncio
                pending.exception()
            await self._stop_listener()

    async def close(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._fail(AuthorizationFlowError("Auth server is shutting down"))
        await self._stop_listener()

    # -------------------------------------------------------------------------
    # Port ownership and delegation
    # -------------------------------------------------------------------------

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform != "win32":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._settings.auth_host, self._settings.auth_port))
            sock.listen(16)
        except OSError:
            sock.close()
            raise
        self._socket = sock
        atexit.register(self._release_socket)
        return sock

    async def _delegate(self) -> AuthOutcome:
        port = self._settings.auth_port
        logger.warning(f"Port {port} is already in use, attempting to use existing server")

        if not await self._peer_serves_login():
            logger.error(f"Process on port {port} does not answer as an auth server")
            raise ServerAlreadyRunning(port)
        if not await self._open_browser(self._settings.login_url):
            raise ServerAlreadyRunning(port)

        logger.info(f"Opened login page of the auth server already running on port {port}")
        return AuthOutcome.DELEGATED

    async def _peer_serves_login(self) -> bool:
        session = await self._http.get()
        try:
            async with session.get(
                self._settings.login_url,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self._probe_timeout),
            ) as response:
                return 300 <= response.status < 400
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe of {self._settings.login_url} failed: {e!r}")
            return False

    async def _open_browser(self, url: str) -> bool:
        try:
            return bool(await asyncio.to_thread(self._browser_opener, url))
        except webbrowser.Error as e:
            logger.warning(f"Could not open browser: {e}")
            return False

    # -------------------------------------------------------------------------
    # Local listener
    # -------------------------------------------------------------------------

    def _build_app(self) -> Starlette:
        return Starlette(routes=[
            Route("/login", self._handle_login),
            Route("/callback", self._handle_callback),
        ])

    async def _start_listener(self, sock: socket.socket) -> None:
        config = uvicorn.Config(
            self._build_app(),
            log_level="warning",
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _CallbackServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._serve_task.done():
                self._server = None
                error = self._serve_task.exception()
                raise AuthorizationFlowError(f"Could not start auth server: {error}")
            await asyncio.sleep(0.01)

    async def _stop_listener(self) -> None:
        server, task = self._server, self._serve_task
        self._server = None
        self._serve_task = None
        if server is not None and task is not None:
            server.should_exit = True
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Auth server did not stop in time, cancelling it")
            except Exception as e:
                logger.error(f"Auth server error while stopping: {e!r}")
            logger.info("Closed auth server")
        self._release_socket()

    def _release_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
            atexit.unregister(self._release_socket)

    async def _wait_for_callback(self, pending: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(pending), timeout=self._settings.auth_timeout)
        except asyncio.TimeoutError:
            if not pending.done():
                self._fail(AuthorizationFlowError(
                    f"Timed out after {self._settings.auth_timeout:g}s waiting for the Spotify login to complete"
                ))
            await pending

    def _fail(self, error: Exception) -> None:
        self.state = AuthState.FAILED
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(error)

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    async def _handle_login(self, request: Request) -> Response:
        params = {
            "response_type": "code",
            "client_id": self._settings.client_id,
            "scope": " ".join(SCOPES),
            "redirect_uri": self._settings.redirect_uri,
        }
        return RedirectResponse(f"{self._settings.authorize_url}?{urlencode(params)}")

    async def _handle_callback(self, request: Request) -> Response:
        if self._pending is None or self._pending.done():
            return PlainTextResponse("No authentication is in progress.", status_code=409)

        code = request.query_params.get("code")
        if not code:
            error = request.query_params.get("error")
            message = f"Authentication failed: {error}" if error else "Authentication failed: No code provided"
            logger.error(message)
            self._fail(AuthorizationFlowError(message))
            return HTMLResponse(_page("Spotify authentication failed", message), status_code=400)

        logger.info("Received authorization code, exchanging for tokens")
        self.state = AuthState.EXCHANGING
        try:
            await self._tokens.exchange_code(code, self._settings.redirect_uri)
        except AuthorizationFlowError as e:
            self._fail(e)
            return HTMLResponse(_page("Spotify authentication failed", str(e)), status_code=502)

        self.state = AuthState.COMPLETE
        if not self._pending.done():
            self._pending.set_result(None)
        return HTMLResponse(_page(
            "Spotify authentication complete",
            "Authentication successful! You can close this window now.",
        ))
