"""
Backend Adapter - Uniform operation set over a playback engine
"""
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import discord

from soundgate.playback.errors import ErrorKind, RemediationGuard, classify
from soundgate.playback.models import (
    EventKind,
    LoopMode,
    Outcome,
    PlaybackEvent,
    QueueSnapshot,
    Track,
)
from soundgate.playback.state import PlaybackAggregator

logger = logging.getLogger(__name__)

Remediation = Callable[[], Awaitable[bool]]


class BackendAdapter(ABC):
    """
    Wraps one playback engine.

    Subclasses translate native engine events into aggregator events through
    `_emit`, tagging each with the generation captured when the session was
    claimed, so events from a session that was stopped are discarded.
    """

    name = "base"

    def __init__(self, state: PlaybackAggregator, remediate: Remediation | None = None):
        self.state = state
        self.remediate = remediate
        self.remediation_guard = RemediationGuard()
        self._generations: dict[int, int] = {}
        self._text_channels: dict[int, discord.abc.Messageable] = {}

    # ==================== OPERATIONS ====================

    @abstractmethod
    async def play(
        self,
        voice_channel: discord.VoiceChannel,
        query: str,
        requester: discord.abc.User,
        text_channel: discord.abc.Messageable | None = None,
    ) -> None:
        """Resolve `query` and queue it. Track-started is reported later through events."""

    @abstractmethod
    async def pause(self, guild_id: int) -> Outcome:
        ...

    @abstractmethod
    async def resume(self, guild_id: int) -> Outcome:
        ...

    @abstractmethod
    async def skip(self, guild_id: int) -> None:
        ...

    @abstractmethod
    async def stop(self, guild_id: int) -> None:
        """Clear queued and current tracks and end the session."""

    @abstractmethod
    async def set_volume(self, guild_id: int, volume: int) -> None:
        ...

    @abstractmethod
    async def set_loop_mode(self, guild_id: int, mode: LoopMode) -> None:
        ...

    @abstractmethod
    def get_queue_snapshot(self, guild_id: int) -> QueueSnapshot:
        ...

    @abstractmethod
    async def teardown(self, guild_id: int) -> None:
        """Stop and leave the voice channel without any chat output."""

    @abstractmethod
    def _voice_connected(self, guild_id: int) -> bool | None:
        """State of this adapter's own voice connection, None when it has none yet."""

    async def handle_disconnect(self, guild_id: int) -> None:
        """The bot left voice in this guild. Only a lost connection of our own ends the session."""
        connected = self._voice_connected(guild_id)
        if connected is None or connected:
            # Another voice client left, or play() has not connected yet
            logger.debug(f"[{self.name}] Ignoring voice disconnect in guild {guild_id} (own connection: {connected})")
            return
        await self._drop_session(guild_id)

    async def _drop_session(self, guild_id: int) -> None:
        had_session = guild_id in self._generations
        await self.teardown(guild_id)
        if had_session:
            await self._send(guild_id, "👋 Disconnected from voice channel")

    async def shutdown(self) -> None:
        for guild_id in list(self._generations):
            try:
                await self.teardown(guild_id)
            except Exception as e:
                logger.error(f"[{self.name}] Teardown failed for guild {guild_id}: {e}")

    def has_session(self, guild_id: int) -> bool:
        return guild_id in self._generations and self.state.owner(guild_id) == self.name

    # ==================== SESSION ====================

    def _claim(self, guild_id: int) -> int:
        generation = self.state.claim(guild_id, self.name)
        self._generations[guild_id] = generation
        return generation

    def _release(self, guild_id: int) -> None:
        self._generations.pop(guild_id, None)
        if self.state.owner(guild_id) == self.name:
            self.state.release(guild_id, self.name)

    def _is_current(self, guild_id: int, generation: int | None = None) -> bool:
        if generation is None:
            generation = self._generations.get(guild_id)
        return self.state.is_current(guild_id, self.name, generation)

    def _emit(
        self,
        kind: EventKind,
        guild_id: int,
        generation: int | None = None,
        track: Track | None = None,
        upcoming: tuple[Track, ...] = (),
        volume: int | None = None,
        loop_mode: LoopMode | None = None,
    ) -> bool:
        if generation is None:
            generation = self._generations.get(guild_id)
        event = PlaybackEvent(
            kind=kind,
            guild_id=guild_id,
            adapter=self.name,
            generation=generation,
            track=track,
            upcoming=tuple(upcoming),
            volume=volume,
            loop_mode=loop_mode,
        )
        applied = self.state.apply(event)
        if applied and kind is EventKind.DISCONNECTED:
            self._generations.pop(guild_id, None)
        return applied

    # ==================== CHAT ====================

    def _remember_channel(self, guild_id: int, text_channel: discord.abc.Messageable | None):
        if text_channel is not None:
            self._text_channels[guild_id] = text_channel

    async def _send(self, guild_id: int, content: str | None = None, embed: discord.Embed | None = None):
        channel = self._text_channels.get(guild_id)
        if channel is None:
            return
        try:
            await channel.send(content=content, embed=embed)
        except discord.HTTPException as e:
            logger.warning(f"[{self.name}] Failed to send message in guild {guild_id}: {e}")

    async def announce_started(self, guild_id: int, track: Track):
        requester = f"<@{track.requester_id}>" if track.requester_id else "Unknown"
        await self._send(
            guild_id,
            f"🎵 Playing: **{track.title}** - `{track.duration_display}` - Requested by {requester}",
        )

    async def announce_added(self, guild_id: int, tracks: list[Track]):
        if not tracks:
            return
        if len(tracks) == 1:
            track = tracks[0]
            await self._send(guild_id, f"✅ Added **{track.title}** - `{track.duration_display}` to the queue")
        else:
            await self._send(guild_id, f"✅ Added **{len(tracks)}** songs to the queue")

    async def announce_finished(self, guild_id: int):
        await self._send(guild_id, "🏁 Queue finished!")

    # ==================== ERRORS ====================

    async def handle_engine_error(self, guild_id: int, error: BaseException) -> ErrorKind:
        """Classify an asynchronous engine error and report it. Never raises."""
        kind = classify(error)
        logger.error(f"[{self.name}] Engine error in guild {guild_id} ({kind.value}): {error}")
        try:
            if kind is ErrorKind.AUTH_REQUIRED:
                remediated = False
                if self.remediate is not None and self.remediation_guard.allow(guild_id):
                    remediated = await self.remediate()
                if remediated:
                    await self._send(guild_id, "🔑 YouTube asked for verification. Cookies were reloaded, try again.")
                else:
                    await self._send(guild_id, "❌ YouTube is asking for verification. Update the cookies with `/cookies`.")
            elif kind is ErrorKind.NOT_FOUND:
                await self._send(guild_id, "❌ That track is unavailable, skipping.")
            elif kind is ErrorKind.TRANSIENT_NETWORK:
                await self._send(guild_id, "⚠️ A network error interrupted playback.")
            else:
                await self._send(guild_id, f"❌ Error: {error}")
        except Exception as e:
            logger.error(f"[{self.name}] Failed to handle engine error in guild {guild_id}: {e}")
        return kind
