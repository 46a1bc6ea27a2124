"""
YouTube Wrapper - ytmusicapi lookups and yt-dlp stream extraction
"""
import asyncio
import logging
import os
import random
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial, wraps

import yt_dlp
from ytmusicapi import YTMusic

from soundgate.playback.errors import (
    AuthRequiredError,
    ErrorKind,
    NoMatchesError,
    TransientNetworkError,
    as_playback_error,
    classify,
)
from soundgate.playback.models import Track, format_duration
from soundgate.services.spotify import SpotifyService, parse_spotify_url

logger = logging.getLogger(__name__)


def retry_with_backoff(retries=3, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    # Only transient failures are worth another round trip
                    if x == retries or classify(e) is not ErrorKind.TRANSIENT_NETWORK:
                        logger.error(f"{func.__name__} failed after {x} retries: {e}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


@dataclass
class YTTrack:
    """YouTube track info."""
    video_id: str
    title: str
    artist: str
    duration_seconds: int | None = None
    thumbnail_url: str | None = None

    @property
    def watch_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"

    def to_track(self, requester_id: int | None = None) -> Track:
        return Track(
            title=self.title,
            source_url=self.watch_url,
            thumbnail_url=self.thumbnail_url or f"https://i.ytimg.com/vi/{self.video_id}/hqdefault.jpg",
            duration_display=format_duration(self.duration_seconds),
            author=self.artist,
            duration_seconds=self.duration_seconds,
            requester_id=requester_id,
        )


class YouTubeService:
    """YouTube Music API wrapper."""

    def __init__(self, cookies_path: str | None = None, po_token: str | None = None,
                 spotify: SpotifyService | None = None):
        self.yt = YTMusic()
        self.spotify = spotify
        self.cookies_path = cookies_path
        self.po_token = po_token

        # Dedicated executor so extraction never starves the default pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")
        self._ydl_opts = self._build_ydl_opts()

    def _build_ydl_opts(self) -> dict:
        opts = {
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "extract_flat": False,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "logtostderr": False,
            "noplaylist": True,
        }
        if self.cookies_path and os.path.exists(self.cookies_path):
            opts["cookiefile"] = self.cookies_path
        if self.po_token:
            opts["extractor_args"] = {"youtube": {"po_token": [self.po_token]}}
        return opts

    def reload_cookies(self) -> bool:
        """Pick up a rewritten cookie file. Returns False when there is no file to load."""
        self._ydl_opts = self._build_ydl_opts()
        loaded = "cookiefile" in self._ydl_opts
        logger.info(f"YouTube cookies reloaded from {self.cookies_path} (present: {loaded})")
        return loaded

    def parse_url(self, url: str) -> tuple[str, str] | None:
        """Parse YouTube URL to (type, id)."""
        if not any(domain in url for domain in ["youtube.com", "youtu.be", "music.youtube.com"]):
            return None

        # A watch URL inside a playlist plays the video
        video_pattern = r"(?:v=|\/|embed\/|youtu\.be\/|shorts\/)([0-9A-Za-z_-]{11})"
        match = re.search(video_pattern, url)
        if match:
            return "video", match.group(1)

        playlist_pattern = r"(?:list=)([a-zA-Z0-9_-]+)"
        match = re.search(playlist_pattern, url)
        if match:
            return "playlist", match.group(1)

        return None

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    async def resolve(self, query: str, limit: int = 100) -> list[YTTrack]:
        """Turn a URL or free-text query into tracks. Raises NoMatchesError when nothing matches."""
        if parse_spotify_url(query):
            return await self.resolve_spotify(query)

        parsed = self.parse_url(query)
        tracks: list[YTTrack] = []
        if parsed and parsed[0] == "video":
            track = await self.get_track_info(parsed[1])
            if track is None:
                track = await self.get_video_metadata(parsed[1])
            if track:
                tracks = [track]
        elif parsed and parsed[0] == "playlist":
            tracks = await self.get_playlist_tracks(parsed[1], limit=limit)
        else:
            match = await self._first_match(query)
            tracks = [match] if match else []

        if not tracks:
            raise NoMatchesError(f"No results found for: `{query}`")
        return tracks

    async def resolve_spotify(self, url: str) -> list[YTTrack]:
        """Look up each track of a Spotify link on YouTube Music by artist and title."""
        if self.spotify is None:
            raise NoMatchesError("Spotify links are not supported on this bot (no Spotify credentials).")

        wanted = await self.spotify.get_tracks(url)
        found = await asyncio.gather(
            *(self._first_match(t.search_query) for t in wanted),
            return_exceptions=True,
        )
        tracks = [t for t in found if isinstance(t, YTTrack)]
        missing = len(wanted) - len(tracks)
        if missing:
            logger.warning(f"{missing} of {len(wanted)} Spotify track(s) had no YouTube match for {url}")
        if not tracks:
            raise NoMatchesError(f"No YouTube matches found for: `{url}`")
        return tracks

    async def _first_match(self, query: str) -> YTTrack | None:
        tracks = await self.search(query, filter_type="songs", limit=1)
        if not tracks:
            tracks = await self.search(query, filter_type="videos", limit=1)
        return tracks[0] if tracks else None

    @retry_with_backoff()
    async def search(self, query: str, filter_type: str = "songs", limit: int = 5) -> list[YTTrack]:
        """Search YouTube Music for tracks."""
        loop = asyncio.get_event_loop()
        try:
            results = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    partial(self.yt.search, query, filter=filter_type, limit=limit)
                ),
                timeout=15.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube search timed out for query: {query}")
            raise TransientNetworkError("YouTube search timed out, please try again.")

        tracks = []
        for r in results:
            if not r.get("videoId"):
                continue

            duration = r.get("duration_seconds")
            if duration is None and r.get("duration"):
                duration = self._parse_duration(r["duration"])

            tracks.append(YTTrack(
                video_id=r["videoId"],
                title=r.get("title", "Unknown"),
                artist=self._first_artist(r),
                duration_seconds=duration,
                thumbnail_url=(r.get("thumbnails") or [{}])[-1].get("url"),
            ))
        return tracks

    @retry_with_backoff()
    async def get_playlist_tracks(self, playlist_id: str, limit: int = 100) -> list[YTTrack]:
        """Get tracks from a YouTube Music playlist."""
        loop = asyncio.get_event_loop()
        try:
            results = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    partial(self.yt.get_playlist, playlist_id, limit=limit)
                ),
                timeout=20.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube playlist fetch timed out for: {playlist_id}")
            raise TransientNetworkError("Loading the playlist timed out, please try again.")
        except Exception as e:
            logger.error(f"Error getting playlist {playlist_id}: {e}")
            return []

        tracks = []
        for t in results.get("tracks", []):
            if not t.get("videoId"):
                continue
            tracks.append(YTTrack(
                video_id=t["videoId"],
                title=t.get("title", "Unknown"),
                artist=self._first_artist(t),
                duration_seconds=t.get("duration_seconds") or self._parse_duration(t.get("duration")),
                thumbnail_url=(t.get("thumbnails") or [{}])[-1].get("url"),
            ))
        return tracks

    async def get_track_info(self, video_id: str) -> YTTrack | None:
        """Get full track info for a specific video."""
        loop = asyncio.get_event_loop()
        try:
            r = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    partial(self.yt.get_song, videoId=video_id)
                ),
                timeout=10.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube track info timed out for: {video_id}")
            return None
        except Exception as e:
            logger.error(f"Error getting track info: {e}")
            return None

        video_details = r.get("videoDetails", {})
        if not video_details:
            return None

        return YTTrack(
            video_id=video_details.get("videoId", video_id),
            title=video_details.get("title", "Unknown"),
            artist=video_details.get("author") or "Unknown",
            duration_seconds=int(video_details["lengthSeconds"]) if video_details.get("lengthSeconds") else None,
            thumbnail_url=(video_details.get("thumbnail", {}).get("thumbnails") or [{}])[-1].get("url"),
        )

    async def get_video_metadata(self, video_id: str) -> YTTrack | None:
        """Title, author, duration and thumbnail of a video, read through yt-dlp."""
        info = await self._extract(f"https://www.youtube.com/watch?v={video_id}")
        if not info:
            return None
        return YTTrack(
            video_id=info.get("id", video_id),
            title=info.get("title", "Unknown"),
            artist=info.get("uploader") or info.get("channel") or "Unknown",
            duration_seconds=int(info["duration"]) if info.get("duration") else None,
            thumbnail_url=info.get("thumbnail"),
        )

    async def get_stream_url(self, video_id: str) -> str:
        """Get the audio stream URL for a video using yt-dlp."""
        info = await self._extract(f"https://www.youtube.com/watch?v={video_id}")
        if not info or not info.get("url"):
            raise NoMatchesError(f"No playable stream for `{video_id}`")
        return info["url"]

    async def _extract(self, url: str) -> dict | None:
        loop = asyncio.get_event_loop()
        opts = dict(self._ydl_opts)

        def extract():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(url, download=False)

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, extract),
                timeout=25.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube extraction timed out for: {url}")
            raise TransientNetworkError("YouTube took too long to respond, please try again.")
        except yt_dlp.utils.DownloadError as e:
            error = as_playback_error(e)
            if isinstance(error, AuthRequiredError):
                logger.warning(f"YouTube bot check triggered for {url}")
            else:
                logger.error(f"yt-dlp failed for {url}: {e}")
            raise error

    @staticmethod
    def _first_artist(item: dict) -> str:
        if item.get("artists") and len(item["artists"]) > 0:
            return item["artists"][0].get("name", "Unknown")
        return item.get("author") or "Unknown"

    def _parse_duration(self, duration_str: str | None) -> int | None:
        """Parse duration string like '3:45' to seconds."""
        if not duration_str:
            return None
        try:
            parts = duration_str.split(":")
            if len(parts) == 2:
                return int(parts[0]) * 60 + int(parts[1])
            elif len(parts) == 3:
                return int(parts[0]) * 3600 + int(parts[1]) * 60 + int(parts[2])
        except ValueError:
            pass
        return None
