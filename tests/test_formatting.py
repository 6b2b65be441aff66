import pytest

from spotify_mcp.formatting import (
    format_artist,
    format_duration,
    format_playback,
    format_playlist,
    format_search_results,
    playlist_track_count,
)


@pytest.mark.parametrize("duration_ms, expected", [
    (0, "0:00"),
    (59_999, "0:59"),
    (61_000, "1:01"),
    (3_600_000, "60:00"),
    (None, "N/A"),
])
def test_format_duration(duration_ms, expected):
    assert format_duration(duration_ms) == expected


def test_playlist_track_count_prefers_items_total():
    assert playlist_track_count({"items": {"total": 3}, "tracks": {"total": 9}}) == 3
    assert playlist_track_count({"tracks": {"total": 9}}) == 9
    assert playlist_track_count({}) == "N/A"


def test_detailed_playlist_shows_visibility():
    text = format_playlist(
        {"name": "Mix", "id": "p1", "owner": {"display_name": "me"}, "public": True, "tracks": {"total": 2}},
        detailed=True,
    )

    assert "Name: Mix" in text
    assert "Public: Yes" in text
    assert "Tracks: 2" in text


def test_artist_without_followers_or_genres():
    text = format_artist({"name": "Nobody", "id": "a1"})

    assert "Followers: N/A" in text
    assert "Genres: None" in text


def test_playlist_search_skips_removed_entries():
    text = format_search_results({"playlists": {"items": [None, {"name": "Kept", "id": "p"}]}}, "playlist")

    assert text.count("Playlist:") == 1


def test_idle_device_playback():
    text = format_playback({"device": {"name": "Phone", "volume_percent": 80}, "shuffle_state": True, "repeat_state": "track"})

    assert text.splitlines()[0] == "No track currently playing."
    assert "Shuffle: On" in text
    assert "Repeat: Track" in text
