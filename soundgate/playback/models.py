"""
Playback Models - Tracks, enums and events shared by adapters and the aggregator
"""
from dataclasses import dataclass, field
from enum import Enum

from soundgate.playback.errors import InvalidRequestError


def format_duration(seconds: int | None) -> str:
    """Format seconds as M:SS, or H:MM:SS for anything an hour or longer."""
    if seconds is None:
        return "Live"
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class Track:
    """A playable track as seen by chat replies and the dashboard."""
    title: str
    source_url: str | None = None
    thumbnail_url: str | None = None
    duration_display: str = "Live"
    author: str = "Unknown"
    duration_seconds: int | None = None
    requester_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "url": self.source_url,
            "thumbnail": self.thumbnail_url,
            "duration": self.duration_display,
            "author": self.author,
        }


class LoopMode(str, Enum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"

    @classmethod
    def parse(cls, text: str) -> "LoopMode":
        """Parse user/dashboard input, accepting the short aliases."""
        aliases = {
            "off": cls.OFF,
            "track": cls.TRACK,
            "song": cls.TRACK,
            "s": cls.TRACK,
            "t": cls.TRACK,
            "queue": cls.QUEUE,
            "q": cls.QUEUE,
        }
        mode = aliases.get(str(text).strip().lower()) if text is not None else None
        if mode is None:
            raise InvalidRequestError("Invalid loop mode")
        return mode

    def next(self) -> "LoopMode":
        order = [LoopMode.OFF, LoopMode.TRACK, LoopMode.QUEUE]
        return order[(order.index(self) + 1) % len(order)]


class BackendStatus(str, Enum):
    """Health of the local audio-encoding dependency (FFmpeg)."""
    UNKNOWN = "unknown"
    CONFIGURED = "configured"
    MISSING = "missing"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Outcome(str, Enum):
    """Result of an idempotent transport call."""
    DONE = "done"
    ALREADY = "already"


class EventKind(str, Enum):
    TRACK_STARTED = "track_started"
    TRACK_ADDED = "track_added"
    QUEUE_FINISHED = "queue_finished"
    PAUSED = "paused"
    RESUMED = "resumed"
    DISCONNECTED = "disconnected"
    VOLUME_CHANGED = "volume_changed"
    LOOP_CHANGED = "loop_changed"


@dataclass(frozen=True)
class RadioSession:
    stream_url: str
    label: str

    def to_dict(self) -> dict:
        return {"streamUrl": self.stream_url, "label": self.label}


@dataclass(frozen=True)
class PlaybackEvent:
    """An engine lifecycle event, tagged with the emitting adapter and its session generation."""
    kind: EventKind
    guild_id: int
    adapter: str
    generation: int | None
    track: Track | None = None
    upcoming: tuple[Track, ...] = field(default_factory=tuple)
    volume: int | None = None
    loop_mode: LoopMode | None = None


@dataclass(frozen=True)
class QueueSnapshot:
    current: Track | None
    upcoming: tuple[Track, ...] = ()
