"""
Playback State Aggregator - Single source of truth for per-guild playback state
"""
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from soundgate.playback.errors import SessionConflictError
from soundgate.playback.models import (
    BackendStatus,
    ConnectionStatus,
    EventKind,
    LoopMode,
    PlaybackEvent,
    RadioSession,
    Track,
)

logger = logging.getLogger(__name__)


@dataclass
class PlaybackState:
    """Mutable per-guild record. Only the aggregator touches instances of this."""
    volume: int = 50
    loop_mode: LoopMode = LoopMode.OFF
    is_playing: bool = False
    is_paused: bool = False
    current_track: Track | None = None
    upcoming: tuple[Track, ...] = ()
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    owner: str | None = None
    generation: int = 0

    def clear_playback(self):
        self.is_playing = False
        self.is_paused = False
        self.current_track = None
        self.upcoming = ()


@dataclass(frozen=True)
class GuildSnapshot:
    guild_id: int | None
    is_playing: bool = False
    is_paused: bool = False
    volume: int = 50
    loop_mode: LoopMode = LoopMode.OFF
    current_track: Track | None = None
    upcoming: tuple[Track, ...] = ()
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    owner: str | None = None

    def to_dict(self) -> dict:
        return {
            "guildId": str(self.guild_id) if self.guild_id is not None else None,
            "isPlaying": self.is_playing,
            "isPaused": self.is_paused,
            "volume": self.volume,
            "loopMode": self.loop_mode.value,
            "currentTrack": self.current_track.to_dict() if self.current_track else None,
            "queue": [track.to_dict() for track in self.upcoming],
            "connectionStatus": self.connection_status.value,
            "backend": self.owner,
        }


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable copy of the aggregator handed to readers."""
    backend_status: BackendStatus
    active_guild_id: int | None
    active: GuildSnapshot
    guilds: Mapping[int, GuildSnapshot] = field(default_factory=dict)
    radio_sessions: Mapping[int, RadioSession] = field(default_factory=dict)
    timestamp: int = 0

    def to_dict(self) -> dict:
        payload = self.active.to_dict()
        payload.update({
            "backendStatus": self.backend_status.value,
            "activeGuildId": str(self.active_guild_id) if self.active_guild_id is not None else None,
            "radioSessions": {
                str(guild_id): session.to_dict() for guild_id, session in self.radio_sessions.items()
            },
            "guilds": {str(guild_id): snap.to_dict() for guild_id, snap in self.guilds.items()},
            "timestamp": self.timestamp,
        })
        return payload


class PlaybackAggregator:
    """Stores what adapters report. Classification and decisions happen elsewhere."""

    def __init__(self, default_volume: int = 50):
        self.default_volume = default_volume
        self.backend_status = BackendStatus.UNKNOWN
        self.active_guild_id: int | None = None
        self._guilds: dict[int, PlaybackState] = {}
        self._radio_sessions: dict[int, RadioSession] = {}

    def _state(self, guild_id: int) -> PlaybackState:
        if guild_id not in self._guilds:
            self._guilds[guild_id] = PlaybackState(volume=self.default_volume)
        return self._guilds[guild_id]

    # ==================== OWNERSHIP ====================

    def owner(self, guild_id: int) -> str | None:
        state = self._guilds.get(guild_id)
        return state.owner if state else None

    def generation(self, guild_id: int) -> int:
        state = self._guilds.get(guild_id)
        return state.generation if state else 0

    def claim(self, guild_id: int, adapter: str) -> int:
        """Mark `adapter` as the guild's session owner and return the session generation."""
        state = self._state(guild_id)
        if state.owner == adapter:
            return state.generation
        if state.owner is not None:
            raise SessionConflictError(
                f"This server's session is owned by the {state.owner} player."
            )
        state.owner = adapter
        state.generation += 1
        logger.debug(f"Guild {guild_id} claimed by {adapter} (generation {state.generation})")
        return state.generation

    def release(self, guild_id: int, adapter: str | None = None) -> int:
        """End the guild's session. Events tagged with older generations become stale."""
        state = self._state(guild_id)
        if adapter is not None and state.owner not in (None, adapter):
            logger.warning(f"{adapter} tried to release guild {guild_id} owned by {state.owner}")
            return state.generation
        state.owner = None
        state.generation += 1
        state.clear_playback()
        logger.debug(f"Guild {guild_id} released (generation {state.generation})")
        return state.generation

    def is_current(self, guild_id: int, adapter: str, generation: int | None) -> bool:
        state = self._guilds.get(guild_id)
        if state is None or generation is None:
            return False
        return state.owner == adapter and state.generation == generation

    # ==================== EVENTS ====================

    def apply(self, event: PlaybackEvent) -> bool:
        """Apply one adapter event. Returns False when the event was discarded as stale."""
        state = self._state(event.guild_id)

        if event.kind is EventKind.DISCONNECTED:
            accepted = state.owner is None or self.is_current(event.guild_id, event.adapter, event.generation)
        else:
            accepted = self.is_current(event.guild_id, event.adapter, event.generation)

        if not accepted:
            logger.debug(
                f"Discarding stale {event.kind.value} from {event.adapter} "
                f"(generation {event.generation}, current {state.generation}, owner {state.owner})"
            )
            return False

        kind = event.kind
        if kind is EventKind.TRACK_STARTED:
            state.current_track = event.track
            state.upcoming = tuple(event.upcoming) if event.track else ()
            state.is_playing = event.track is not None
            state.is_paused = False
            state.connection_status = ConnectionStatus.CONNECTED

        elif kind is EventKind.TRACK_ADDED:
            if state.current_track is not None:
                state.upcoming = tuple(event.upcoming)

        elif kind is EventKind.QUEUE_FINISHED:
            state.clear_playback()

        elif kind is EventKind.PAUSED:
            if state.current_track is not None:
                state.is_paused = True
                state.is_playing = False

        elif kind is EventKind.RESUMED:
            if state.current_track is not None:
                state.is_paused = False
                state.is_playing = True

        elif kind is EventKind.DISCONNECTED:
            state.connection_status = ConnectionStatus.DISCONNECTED
            state.clear_playback()
            if state.owner is not None:
                state.owner = None
                state.generation += 1

        elif kind is EventKind.VOLUME_CHANGED:
            if event.volume is not None:
                state.volume = event.volume

        elif kind is EventKind.LOOP_CHANGED:
            if event.loop_mode is not None:
                state.loop_mode = event.loop_mode

        self.active_guild_id = event.guild_id
        return True

    # ==================== RADIO & PROCESS STATE ====================

    def radio_started(self, guild_id: int, session: RadioSession):
        self._radio_sessions[guild_id] = session
        self.active_guild_id = guild_id

    def radio_stopped(self, guild_id: int) -> RadioSession | None:
        return self._radio_sessions.pop(guild_id, None)

    def radio_session(self, guild_id: int) -> RadioSession | None:
        return self._radio_sessions.get(guild_id)

    def set_backend_status(self, status: BackendStatus):
        self.backend_status = status

    def forget_guild(self, guild_id: int):
        """Drop everything known about a guild the bot has left."""
        self._guilds.pop(guild_id, None)
        self._radio_sessions.pop(guild_id, None)
        if self.active_guild_id == guild_id:
            self.active_guild_id = None

    # ==================== READS ====================

    def _guild_snapshot(self, guild_id: int | None) -> GuildSnapshot:
        state = self._guilds.get(guild_id) if guild_id is not None else None
        if state is None:
            return GuildSnapshot(guild_id=guild_id, volume=self.default_volume)
        return GuildSnapshot(
            guild_id=guild_id,
            is_playing=state.is_playing,
            is_paused=state.is_paused,
            volume=state.volume,
            loop_mode=state.loop_mode,
            current_track=state.current_track,
            upcoming=tuple(state.upcoming),
            connection_status=state.connection_status,
            owner=state.owner,
        )

    def get(self, guild_id: int) -> GuildSnapshot:
        return self._guild_snapshot(guild_id)

    def snapshot(self, guild_id: int | None = None) -> StateSnapshot:
        focus = guild_id if guild_id is not None else self.active_guild_id
        return StateSnapshot(
            backend_status=self.backend_status,
            active_guild_id=self.active_guild_id,
            active=self._guild_snapshot(focus),
            guilds=MappingProxyType({gid: self._guild_snapshot(gid) for gid in self._guilds}),
            radio_sessions=MappingProxyType(dict(self._radio_sessions)),
            timestamp=int(time.time() * 1000),
        )
