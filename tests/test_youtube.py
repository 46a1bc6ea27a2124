import pytest

from soundgate.playback.errors import NoMatchesError, TransientNetworkError
from soundgate.services import youtube as youtube_module
from soundgate.services.spotify import SpotifyTrack
from soundgate.services.youtube import YouTubeService, YTTrack, retry_with_backoff


@pytest.fixture
def service(tmp_path):
    svc = YouTubeService(cookies_path=str(tmp_path / "cookies.txt"))
    yield svc
    svc.executor.shutdown(wait=False)


@pytest.mark.parametrize("url, expected", [
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", ("video", "dQw4w9WgXcQ")),
    ("https://youtu.be/dQw4w9WgXcQ", ("video", "dQw4w9WgXcQ")),
    ("https://music.youtube.com/watch?v=dQw4w9WgXcQ&list=PL123", ("video", "dQw4w9WgXcQ")),
    ("https://www.youtube.com/playlist?list=PLabc_123", ("playlist", "PLabc_123")),
    ("https://example.com/watch?v=dQw4w9WgXcQ", None),
    ("never gonna give you up", None),
])
def test_parse_url(service, url, expected):
    assert service.parse_url(url) == expected


def test_reload_cookies_picks_up_new_file(service, tmp_path):
    assert "cookiefile" not in service._ydl_opts
    assert service.reload_cookies() is False

    (tmp_path / "cookies.txt").write_text("# Netscape HTTP Cookie File\n")
    assert service.reload_cookies() is True
    assert service._ydl_opts["cookiefile"] == str(tmp_path / "cookies.txt")


def test_yttrack_to_track():
    track = YTTrack(video_id="dQw4w9WgXcQ", title="Song", artist="Band", duration_seconds=212).to_track(7)
    assert track.source_url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert track.duration_display == "3:32"
    assert track.requester_id == 7
    assert track.thumbnail_url.endswith("/dQw4w9WgXcQ/hqdefault.jpg")


async def test_resolve_falls_back_to_video_search(service, monkeypatch):
    calls = []

    async def fake_search(query, filter_type="songs", limit=5):
        calls.append(filter_type)
        if filter_type == "videos":
            return [YTTrack(video_id="abcdefghijk", title=query, artist="Someone")]
        return []

    monkeypatch.setattr(service, "search", fake_search)
    tracks = await service.resolve("obscure live set")
    assert calls == ["songs", "videos"]
    assert tracks[0].title == "obscure live set"


async def test_resolve_without_results(service, monkeypatch):
    async def no_results(query, filter_type="songs", limit=5):
        return []

    monkeypatch.setattr(service, "search", no_results)
    with pytest.raises(NoMatchesError, match="No results found"):
        await service.resolve("nothing at all")


async def test_retry_only_for_transient_errors(monkeypatch):
    monkeypatch.setattr(youtube_module.random, "uniform", lambda a, b: 0)
    attempts = {"transient": 0, "missing": 0}

    @retry_with_backoff(retries=2, backoff_in_seconds=0)
    async def flaky():
        attempts["transient"] += 1
        if attempts["transient"] < 3:
            raise TransientNetworkError()
        return "ok"

    @retry_with_backoff(retries=2, backoff_in_seconds=0)
    async def missing():
        attempts["missing"] += 1
        raise NoMatchesError()

    assert await flaky() == "ok"
    assert attempts["transient"] == 3

    with pytest.raises(NoMatchesError):
        await missing()
    assert attempts["missing"] == 1


class FakeSpotify:
    def __init__(self, tracks):
        self.tracks = tracks

    async def get_tracks(self, url):
        return self.tracks


async def test_spotify_link_is_searched_by_name(service, monkeypatch):
    service.spotify = FakeSpotify([SpotifyTrack("One", "Band"), SpotifyTrack("Lost", "Nobody")])
    queries = []

    async def fake_search(query, filter_type="songs", limit=5):
        queries.append(query)
        if query == "Band - One":
            return [YTTrack(video_id="abcdefghijk", title="One", artist="Band")]
        return []

    monkeypatch.setattr(service, "search", fake_search)
    tracks = await service.resolve("https://open.spotify.com/album/xyz")

    assert [t.title for t in tracks] == ["One"]
    assert "https://open.spotify.com/album/xyz" not in queries


async def test_spotify_link_without_spotify_fails(service):
    with pytest.raises(NoMatchesError, match="Spotify"):
        await service.resolve("https://open.spotify.com/track/abc123")


async def test_spotify_link_with_no_youtube_match(service, monkeypatch):
    service.spotify = FakeSpotify([SpotifyTrack("Lost", "Nobody")])

    async def no_results(query, filter_type="songs", limit=5):
        return []

    monkeypatch.setattr(service, "search", no_results)
    with pytest.raises(NoMatchesError, match="No YouTube matches"):
        await service.resolve("https://open.spotify.com/track/abc123")
