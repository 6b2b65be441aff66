"""Plain-text rendering of Spotify Web API objects for tool results."""

from typing import Any, Dict, Iterable, List

REPEAT_LABELS = {"off": "Off", "context": "Context", "track": "Track"}


def format_duration(duration_ms: Any) -> str:
    try:
        total_seconds = int(duration_ms) // 1000
    except (TypeError, ValueError):
        return "N/A"
    return f"{total_seconds // 60}:{total_seconds % 60:02d}"


def _names(items: Iterable[Dict[str, Any]]) -> str:
    return ", ".join(a.get("name", "Unknown") for a in (items or []))


def _url(item: Dict[str, Any]) -> str:
    return (item.get("external_urls") or {}).get("spotify", "N/A")


def format_track(track: Dict[str, Any]) -> str:
    return "\n".join([
        f"Track: {track.get('name')}",
        f"Artist: {_names(track.get('artists'))}",
        f"Album: {(track.get('album') or {}).get('name', 'N/A')}",
        f"ID: {track.get('id')}",
        f"Duration: {format_duration(track.get('duration_ms'))}",
        f"URL: {_url(track)}",
        "---",
    ])


def format_album(album: Dict[str, Any]) -> str:
    return "\n".join([
        f"Album: {album.get('name')}",
        f"Artist: {_names(album.get('artists'))}",
        f"ID: {album.get('id')}",
        f"Release Date: {album.get('release_date', 'N/A')}",
        f"Tracks: {album.get('total_tracks', 'N/A')}",
        f"URL: {_url(album)}",
        "---",
    ])


def format_artist(artist: Dict[str, Any]) -> str:
    followers = (artist.get("followers") or {}).get("total")
    return "\n".join([
        f"Artist: {artist.get('name')}",
        f"ID: {artist.get('id')}",
        f"Popularity: {artist.get('popularity', 'N/A')}/100",
        f"Followers: {followers if followers is not None else 'N/A'}",
        f"Genres: {', '.join(artist.get('genres') or []) or 'None'}",
        f"URL: {_url(artist)}",
        "---",
    ])


def playlist_track_count(playlist: Dict[str, Any]) -> Any:
    # newer responses report the count under "items", older ones under "tracks"
    for key in ("items", "tracks"):
        value = playlist.get(key)
        if isinstance(value, dict) and "total" in value:
            return value["total"]
    return "N/A"


def format_playlist(playlist: Dict[str, Any], detailed: bool = False) -> str:
    owner = (playlist.get("owner") or {}).get("display_name", "Unknown")
    lines = [
        f"{'Name' if detailed else 'Playlist'}: {playlist.get('name')}",
        f"ID: {playlist.get('id')}",
        f"Owner: {owner}",
        f"Tracks: {playlist_track_count(playlist)}",
    ]
    if detailed:
        lines.append(f"Public: {'Yes' if playlist.get('public') else 'No'}")
    else:
        lines.append(f"Description: {playlist.get('description') or 'None'}")
    lines += [f"URL: {_url(playlist)}", "---"]
    return "\n".join(lines)


SEARCH_FORMATTERS = {
    "track": format_track,
    "album": format_album,
    "artist": format_artist,
    "playlist": format_playlist,
}


def format_search_results(results: Dict[str, Any], search_type: str) -> str:
    # playlist searches can contain null entries for removed playlists
    items = [i for i in (results.get(f"{search_type}s") or {}).get("items", []) if i]
    if not items:
        return f"No {search_type}s found matching your search."
    formatter = SEARCH_FORMATTERS[search_type]
    return "\n".join(formatter(item) for item in items)


def format_playback(playback: Dict[str, Any]) -> str:
    device = playback.get("device") or {}
    common = [
        f"Device: {device.get('name', 'Unknown')}",
        f"Volume: {device.get('volume_percent', 'N/A')}%",
        f"Shuffle: {'On' if playback.get('shuffle_state') else 'Off'}",
        f"Repeat: {REPEAT_LABELS.get(playback.get('repeat_state'), 'Off')}",
    ]
    item = playback.get("item")
    if not item:
        return "\n".join(["No track currently playing."] + common)

    lines: List[str] = [
        f"Currently {'Playing' if playback.get('is_playing') else 'Paused'}:",
        f"Track: {item.get('name')}",
        f"Artist: {_names(item.get('artists'))}",
        f"Album: {(item.get('album') or {}).get('name', 'N/A')}",
        f"Progress: {format_duration(playback.get('progress_ms'))} / {format_duration(item.get('duration_ms'))}",
    ]
    return "\n".join(lines + common)
