"""
Spotify Lookup - Turns Spotify track, album and playlist links into YouTube search queries
"""
import asyncio
import logging
import re
from dataclasses import dataclass

import spotipy
from spotipy.oauth2 import SpotifyClientCredentials

from soundgate.playback.errors import NoMatchesError, TransientNetworkError

logger = logging.getLogger(__name__)

SPOTIFY_LINK = re.compile(r"open\.spotify\.com/(?:intl-[a-z]+/)?(track|album|playlist)/([a-zA-Z0-9]+)")
PAGE_SIZE = 50


def parse_spotify_url(url: str) -> tuple[str, str] | None:
    """Parse a Spotify link to (kind, id)."""
    match = SPOTIFY_LINK.search(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


@dataclass
class SpotifyTrack:
    title: str
    artist: str

    @property
    def search_query(self) -> str:
        return f"{self.artist} - {self.title}"


class SpotifyService:
    """Spotify Web API lookups through spotipy's client-credentials flow."""

    def __init__(self, client_id: str | None = None, client_secret: str | None = None,
                 client: spotipy.Spotify | None = None, limit: int = 100):
        self.limit = limit
        self.sp = client
        if self.sp is None and client_id and client_secret:
            self.sp = spotipy.Spotify(
                auth_manager=SpotifyClientCredentials(client_id=client_id, client_secret=client_secret)
            )
        if self.sp is None:
            logger.info("Spotify credentials not set, Spotify links cannot be played")

    @property
    def enabled(self) -> bool:
        return self.sp is not None

    async def get_tracks(self, url: str) -> list[SpotifyTrack]:
        """Title and artist of every track behind a Spotify link. Raises NoMatchesError when nothing can be read."""
        parsed = parse_spotify_url(url)
        if parsed is None:
            raise NoMatchesError("That doesn't look like a Spotify track, album or playlist link.")
        if not self.enabled:
            raise NoMatchesError("Spotify links are not supported on this bot (no Spotify credentials).")

        kind, item_id = parsed
        try:
            tracks = await asyncio.to_thread(self._fetch, kind, item_id)
        except spotipy.SpotifyException as e:
            logger.error(f"Spotify lookup failed for {kind} {item_id}: {e}")
            if e.http_status and e.http_status >= 500:
                raise TransientNetworkError("Spotify is not responding, please try again.")
            raise NoMatchesError(f"Could not read that Spotify {kind}.")

        if not tracks:
            raise NoMatchesError(f"The Spotify {kind} has no playable tracks.")
        logger.info(f"Spotify {kind} {item_id} resolved to {len(tracks)} track(s)")
        return tracks

    def _fetch(self, kind: str, item_id: str) -> list[SpotifyTrack]:
        if kind == "track":
            return [self._to_track(self.sp.track(item_id))]

        tracks = []
        offset = 0
        while len(tracks) < self.limit:
            if kind == "album":
                page = self.sp.album_tracks(item_id, limit=PAGE_SIZE, offset=offset)
                items = page.get("items", [])
            else:
                page = self.sp.playlist_items(item_id, limit=PAGE_SIZE, offset=offset, additional_types=("track",))
                items = [it.get("track") for it in page.get("items", [])]
            for item in items:
                if item and item.get("name"):
                    tracks.append(self._to_track(item))
            if not items or page.get("next") is None:
                break
            offset += PAGE_SIZE
        return tracks[:self.limit]

    @staticmethod
    def _to_track(item: dict) -> SpotifyTrack:
        artists = ", ".join(a["name"] for a in item.get("artists", []) if a.get("name"))
        return SpotifyTrack(title=item.get("name") or "Unknown", artist=artists or "Unknown")
