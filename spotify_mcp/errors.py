from typing import Any, List, Optional


class SpotifyMCPError(Exception):
    pass


class ConfigurationError(SpotifyMCPError):
    pass


class AuthenticationRequired(SpotifyMCPError):
    """No usable credential exists; the interactive login has to run."""

    def __init__(self, message: str = "Not authenticated. Please authorize the app first."):
        super().__init__(message)


class AuthorizationExpired(SpotifyMCPError):
    """A credential that looked valid was rejected by the Web API."""

    def __init__(self, message: str = "Authorization expired. Please authenticate again."):
        super().__init__(message)


class ServerAlreadyRunning(SpotifyMCPError):
    def __init__(self, port: int):
        super().__init__(f"Server already running on port {port}")
        self.port = port


class AuthorizationFlowError(SpotifyMCPError):
    pass


class RemoteAPIError(SpotifyMCPError):
    def __init__(self, status: int, body: Any = None, message: Optional[str] = None):
        super().__init__(message or _describe(body) or f"Request failed with status {status}")
        self.status = status
        self.body = body


class TransportError(SpotifyMCPError):
    pass


class ToolNotFoundError(SpotifyMCPError):
    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ValidationError(SpotifyMCPError):
    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


def _describe(body: Any) -> Optional[str]:
    # Web API errors look like {"error": {"status": 404, "message": "..."}},
    # token endpoint errors like {"error": "invalid_grant", "error_description": "..."}
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message")
        if isinstance(error, str):
            return body.get("error_description") or error
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return None


def format_error(error: BaseException) -> str:
    if isinstance(error, ValidationError) and error.errors:
        details = ", ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}" for e in error.errors
        )
        return f"{error}: {details}"

    if isinstance(error, RemoteAPIError):
        return f"API Error ({error.status}): {error}"

    return str(error) or error.__class__.__name__
