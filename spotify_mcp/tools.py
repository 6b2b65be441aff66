import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Type

import mcp.types as types
import pydantic
from pydantic import BaseModel, Field

from spotify_mcp.auth_flow import AuthOutcome, AuthorizationFlow
from spotify_mcp.client import SpotifyClient
from spotify_mcp.errors import (
    AuthenticationRequired,
    AuthorizationExpired,
    ServerAlreadyRunning,
    SpotifyMCPError,
    ToolNotFoundError,
    ValidationError,
    format_error,
)
from spotify_mcp.formatting import format_playback, format_playlist, format_search_results, format_track

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[str]]


# -----------------------------------------------------------------------------
# Argument models
# -----------------------------------------------------------------------------

class NoParams(BaseModel):
    pass


class SearchParams(BaseModel):
    query: str
    type: Literal["track", "album", "artist", "playlist"] = "track"
    limit: int = Field(default=10, ge=1, le=50)


class PlayTrackParams(BaseModel):
    trackId: str
    deviceId: Optional[str] = None


class GetUserPlaylistsParams(BaseModel):
    limit: int = Field(default=20, ge=1, le=50)
    offset: int = Field(default=0, ge=0)


class CreatePlaylistParams(BaseModel):
    name: str
    description: Optional[str] = None
    public: bool = False


class AddTracksParams(BaseModel):
    playlistId: str
    trackIds: List[str] = Field(min_length=1)


class GetRecommendationsParams(BaseModel):
    seedTracks: Optional[List[str]] = None
    seedArtists: Optional[List[str]] = None
    seedGenres: Optional[List[str]] = None
    limit: int = Field(default=20, ge=1, le=100)


class GetTopTracksParams(BaseModel):
    limit: int = Field(default=20, ge=1, le=50)
    offset: int = Field(default=0, ge=0)
    time_range: Literal["short_term", "medium_term", "long_term"] = "medium_term"


# -----------------------------------------------------------------------------
# Tool definitions
# -----------------------------------------------------------------------------

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


def get_tool_definitions() -> List[types.Tool]:
    return [
        types.Tool(
            name="auth-spotify",
            description="Authenticate with Spotify. Opens the Spotify login page in the browser and waits for the login to complete.",
            inputSchema=_EMPTY_SCHEMA,
        ),
        types.Tool(
            name="search-spotify",
            description="Search for tracks, albums, artists, or playlists on Spotify",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "type": {"type": "string", "enum": ["track", "album", "artist", "playlist"], "description": "Type of item to search for (default: track)"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "description": "Maximum number of results to return (1-50, default: 10)"},
                },
                "required": ["query"],
            },
        ),
        types.Tool(
            name="get-current-playback",
            description="Get information about the user's current playback state",
            inputSchema=_EMPTY_SCHEMA,
        ),
        types.Tool(
            name="play-track",
            description="Play a specific track on an active device",
            inputSchema={
                "type": "object",
                "properties": {
                    "trackId": {"type": "string", "description": "Spotify ID of the track to play"},
                    "deviceId": {"type": "string", "description": "Spotify ID of the device to play on (optional)"},
                },
                "required": ["trackId"],
            },
        ),
        types.Tool(name="pause-playback", description="Pause the user's playback", inputSchema=_EMPTY_SCHEMA),
        types.Tool(name="next-track", description="Skip to the next track", inputSchema=_EMPTY_SCHEMA),
        types.Tool(name="previous-track", description="Skip to the previous track", inputSchema=_EMPTY_SCHEMA),
        types.Tool(
            name="get-user-playlists",
            description="Get a list of the user's playlists",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "description": "Maximum number of playlists to return (1-50, default: 20)"},
                    "offset": {"type": "integer", "minimum": 0, "description": "The index of the first playlist to return (default: 0)"},
                },
            },
        ),
        types.Tool(
            name="create-playlist",
            description="Create a new playlist for the current user",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Name of the playlist"},
                    "description": {"type": "string", "description": "Description of the playlist (optional)"},
                    "public": {"type": "boolean", "description": "Whether the playlist should be public (default: false)"},
                },
                "required": ["name"],
            },
        ),
        types.Tool(
            name="add-tracks-to-playlist",
            description="Add tracks to a playlist",
            inputSchema={
                "type": "object",
                "properties": {
                    "playlistId": {"type": "string", "description": "Spotify ID of the playlist"},
                    "trackIds": {"type": "array", "items": {"type": "string"}, "description": "Array of Spotify track IDs to add"},
                },
                "required": ["playlistId", "trackIds"],
            },
        ),
        types.Tool(
            name="get-recommendations",
            description="Get track recommendations based on seed tracks, artists, or genres (at least one seed is required)",
            inputSchema={
                "type": "object",
                "properties": {
                    "seedTracks": {"type": "array", "items": {"type": "string"}, "description": "Array of Spotify track IDs to use as seeds (optional)"},
                    "seedArtists": {"type": "array", "items": {"type": "string"}, "description": "Array of Spotify artist IDs to use as seeds (optional)"},
                    "seedGenres": {"type": "array", "items": {"type": "string"}, "description": "Array of genre names to use as seeds (optional)"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100, "description": "Maximum number of tracks to return (1-100, default: 20)"},
                },
            },
        ),
        types.Tool(
            name="get-top-tracks",
            description="Get the user's top played tracks over a specified time range",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "description": "The number of tracks to return (1-50, default: 20)"},
                    "offset": {"type": "integer", "minimum": 0, "description": "The index of the first track to return (default: 0)"},
                    "time_range": {
                        "type": "string",
                        "enum": ["short_term", "medium_term", "long_term"],
                        "description": "Over what time frame the affinities are computed. short_term = ~4 weeks, medium_term = ~6 months, long_term = several years (default: medium_term)",
                    },
                },
            },
        ),
    ]


# -----------------------------------------------------------------------------
# Tool handlers
# -----------------------------------------------------------------------------

class ToolRegistry:
    """Maps tool names to handlers that each issue Web API calls through the client."""

    def __init__(self, client: SpotifyClient, auth_flow: AuthorizationFlow):
        self._client = client
        self._auth_flow = auth_flow
        self._handlers: Dict[str, Tuple[Type[BaseModel], ToolHandler]] = {
            "auth-spotify": (NoParams, self._auth),
            "search-spotify": (SearchParams, self._search),
            "get-current-playback": (NoParams, self._current_playback),
            "play-track": (PlayTrackParams, self._play_track),
            "pause-playback": (NoParams, self._pause),
            "next-track": (NoParams, self._next),
            "previous-track": (NoParams, self._previous),
            "get-user-playlists": (GetUserPlaylistsParams, self._user_playlists),
            "create-playlist": (CreatePlaylistParams, self._create_playlist),
            "add-tracks-to-playlist": (AddTracksParams, self._add_tracks),
            "get-recommendations": (GetRecommendationsParams, self._recommendations),
            "get-top-tracks": (GetTopTracksParams, self._top_tracks),
        }

    def definitions(self) -> List[types.Tool]:
        return get_tool_definitions()

    async def call(self, name: str, arguments: Optional[Dict[str, Any]]) -> str:
        """Run a tool and always come back with user-facing text."""
        logger.info(f"Tool called: {name}")
        try:
            return await self._dispatch(name, arguments or {})
        except (AuthenticationRequired, AuthorizationExpired) as e:
            logger.warning(f"Authentication needed for {name}: {e}")
            return f"{e}\n\nRun the 'auth-spotify' tool to log in to Spotify, then try again."
        except ServerAlreadyRunning as e:
            return (
                f"Another instance is already running on port {e.port}. Attempted to connect to that instance. "
                f"If you're having issues, please ensure no other processes are using port {e.port} or try again later."
            )
        except SpotifyMCPError as e:
            logger.error(f"Error in {name}: {e}")
            return f"Error: {format_error(e)}"
        except Exception as e:
            logger.exception(f"Unexpected error in {name}: {e}")
            return f"An unexpected error occurred: {e.__class__.__name__}"

    async def _dispatch(self, name: str, arguments: Dict[str, Any]) -> str:
        if name not in self._handlers:
            raise ToolNotFoundError(name)
        model, handler = self._handlers[name]
        try:
            params = model.model_validate(arguments)
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid arguments", e.errors()) from None
        return await handler(params)

    # -----------------------------------------------------------------------------

    async def _auth(self, params: NoParams) -> str:
        outcome = await self._auth_flow.authenticate()
        if outcome is AuthOutcome.DELEGATED:
            return (
                "Another instance is already handling Spotify authentication. "
                "Its login page has been opened in your browser; the login will be shared once it completes."
            )
        return "Successfully authenticated with Spotify!"

    async def _search(self, params: SearchParams) -> str:
        results = await self._client.call(
            "/search", params={"q": params.query, "type": params.type, "limit": params.limit}
        )
        return format_search_results(results, params.type)

    async def _current_playback(self, params: NoParams) -> str:
        playback = await self._client.call("/me/player")
        if not playback:
            return "No active playback found. Make sure you have an active Spotify session."
        return format_playback(playback)

    async def _play_track(self, params: PlayTrackParams) -> str:
        await self._client.call(
            "/me/player/play",
            method="PUT",
            body={"uris": [f"spotify:track:{params.trackId}"]},
            params={"device_id": params.deviceId} if params.deviceId else None,
        )
        return f"Started playing track with ID: {params.trackId}"

    async def _pause(self, params: NoParams) -> str:
        await self._client.call("/me/player/pause", method="PUT")
        return "Playback paused."

    async def _next(self, params: NoParams) -> str:
        await self._client.call("/me/player/next", method="POST")
        return "Skipped to next track."

    async def _previous(self, params: NoParams) -> str:
        await self._client.call("/me/player/previous", method="POST")
        return "Skipped to previous track."

    async def _user_playlists(self, params: GetUserPlaylistsParams) -> str:
        playlists = await self._client.call("/me/playlists", params={"limit": params.limit, "offset": params.offset})
        items = [p for p in playlists.get("items", []) if p]
        if not items:
            return "No more playlists found." if params.offset > 0 else "You don't have any playlists."
        formatted = "\n".join(format_playlist(p, detailed=True) for p in items)
        return f"Your playlists:\n{formatted}"

    async def _create_playlist(self, params: CreatePlaylistParams) -> str:
        user = await self._client.call("/me")
        if not user.get("id"):
            raise SpotifyMCPError("Could not determine the current Spotify user")
        body = {"name": params.name, "public": params.public}
        if params.description is not None:
            body["description"] = params.description
        playlist = await self._client.call(f"/users/{user['id']}/playlists", method="POST", body=body)
        return "\n".join([
            "Playlist created successfully:",
            f"Name: {playlist.get('name')}",
            f"ID: {playlist.get('id')}",
            f"URL: {(playlist.get('external_urls') or {}).get('spotify', 'N/A')}",
        ])

    async def _add_tracks(self, params: AddTracksParams) -> str:
        uris = [f"spotify:track:{track_id}" for track_id in params.trackIds]
        await self._client.call(f"/playlists/{params.playlistId}/tracks", method="POST", body={"uris": uris})
        return f"Added {len(params.trackIds)} tracks to playlist with ID: {params.playlistId}"

    async def _recommendations(self, params: GetRecommendationsParams) -> str:
        if not (params.seedTracks or params.seedArtists or params.seedGenres):
            raise ValidationError("At least one seed (tracks, artists, or genres) must be provided")

        query: Dict[str, Any] = {"limit": params.limit}
        if params.seedTracks:
            query["seed_tracks"] = ",".join(params.seedTracks)
        if params.seedArtists:
            query["seed_artists"] = ",".join(params.seedArtists)
        if params.seedGenres:
            query["seed_genres"] = ",".join(params.seedGenres)

        recommendations = await self._client.call("/recommendations", params=query)
        tracks = recommendations.get("tracks", [])
        if not tracks:
            return "No recommendations found."
        return "Recommended tracks:\n" + "\n".join(format_track(t) for t in tracks)

    async def _top_tracks(self, params: GetTopTracksParams) -> str:
        top_tracks = await self._client.call(
            "/me/top/tracks",
            params={"limit": params.limit, "offset": params.offset, "time_range": params.time_range},
        )
        items = top_tracks.get("items", [])
        if not items:
            return "No top tracks found for the specified time range."
        return "Your top tracks:\n" + "\n".join(format_track(t) for t in items)
