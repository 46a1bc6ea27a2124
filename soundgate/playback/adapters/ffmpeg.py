"""
FFmpeg Adapter - In-process queue engine (yt-dlp + FFmpeg), used when Lavalink is unavailable
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Callable

import discord

from soundgate.playback.adapters.base import BackendAdapter, Remediation
from soundgate.playback.errors import (
    BackendUnavailableError,
    NotPlayingError,
    PlaybackError,
    SessionConflictError,
    as_playback_error,
)
from soundgate.playback.models import (
    BackendStatus,
    EventKind,
    LoopMode,
    Outcome,
    QueueSnapshot,
    Track,
)
from soundgate.playback.state import PlaybackAggregator
from soundgate.services.youtube import YouTubeService

logger = logging.getLogger(__name__)

FFMPEG_OPTIONS = {
    "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin",
    "options": "-vn",
}

SourceFactory = Callable[[str, int], discord.AudioSource]


def ffmpeg_source(url: str, volume: int) -> discord.AudioSource:
    """PCM volume transformer over an FFmpeg decode of `url`."""
    return discord.PCMVolumeTransformer(
        discord.FFmpegPCMAudio(url, **FFMPEG_OPTIONS),
        volume=volume / 100,
    )


@dataclass
class QueueEntry:
    """Item in the music queue."""
    track: Track
    video_id: str
    stream_url: str | None = None  # Resolved lazily, except for the first entry of an idle queue


@dataclass
class GuildQueue:
    """Per-guild queue engine state."""
    guild_id: int
    voice_client: discord.VoiceClient | None = None
    entries: deque = field(default_factory=deque)
    current: QueueEntry | None = None
    loop_mode: LoopMode = LoopMode.OFF
    volume: int = 50
    skip_requested: bool = False
    task: asyncio.Task | None = None
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class FFmpegAdapter(BackendAdapter):
    """Adapter B: resolves with ytmusicapi/yt-dlp and streams through FFmpeg."""

    name = "ffmpeg"

    def __init__(
        self,
        state: PlaybackAggregator,
        youtube: YouTubeService,
        remediate: Remediation | None = None,
        source_factory: SourceFactory = ffmpeg_source,
        idle_timeout: int = 300,
    ):
        super().__init__(state, remediate)
        self.youtube = youtube
        self.source_factory = source_factory
        self.idle_timeout = idle_timeout
        self.queues: dict[int, GuildQueue] = {}
        self._idle_check_task: asyncio.Task | None = None

    def get_queue(self, guild_id: int) -> GuildQueue:
        """Get or create the queue for a guild."""
        if guild_id not in self.queues:
            self.queues[guild_id] = GuildQueue(guild_id=guild_id, volume=self.state.get(guild_id).volume)
        return self.queues[guild_id]

    async def start(self):
        self._idle_check_task = asyncio.create_task(self._idle_check_loop())

    # ==================== OPERATIONS ====================

    async def play(self, voice_channel, query, requester, text_channel=None):
        if self.state.backend_status is BackendStatus.MISSING:
            raise BackendUnavailableError("FFmpeg is not installed, so local playback is unavailable.")

        guild = voice_channel.guild
        owner = self.state.owner(guild.id)
        if owner not in (None, self.name):
            raise SessionConflictError()

        gq = self.get_queue(guild.id)
        fresh_session = owner is None
        generation = self._claim(guild.id)

        try:
            found = await self.youtube.resolve(query)
            entries = [QueueEntry(track=t.to_track(requester.id), video_id=t.video_id) for t in found]

            idle = not gq.is_running
            if idle:
                # Resolve up front so a bot check surfaces on this call
                entries[0].stream_url = await self.youtube.get_stream_url(entries[0].video_id)

            if not self._is_current(guild.id, generation):
                logger.info(f"Dropping stale play of '{query}' in guild {guild.id}")
                return

            await self._connect(gq, voice_channel)
        except Exception as e:
            if fresh_session and not gq.is_running and self._is_current(guild.id, generation):
                self._release(guild.id)
            if isinstance(e, PlaybackError):
                raise
            raise as_playback_error(e) from e

        self._remember_channel(guild.id, text_channel)
        gq.entries.extend(entries)
        gq.last_activity = datetime.now(UTC)
        logger.info(f"Queued {len(entries)} track(s) in guild {guild.id}: {entries[0].track.title}")

        if idle:
            gq.task = asyncio.create_task(self._play_loop(gq, generation))
            if len(entries) > 1:
                await self.announce_added(guild.id, [e.track for e in entries])
        else:
            self._emit(EventKind.TRACK_ADDED, guild.id, generation, upcoming=self._upcoming(gq))
            await self.announce_added(guild.id, [e.track for e in entries])

    async def _connect(self, gq: GuildQueue, voice_channel: discord.VoiceChannel):
        if gq.voice_client and gq.voice_client.is_connected():
            if gq.voice_client.channel != voice_channel:
                await gq.voice_client.move_to(voice_channel)
            return

        existing = voice_channel.guild.voice_client
        if existing is not None:
            logger.info(f"Replacing foreign voice client in guild {voice_channel.guild.id}")
            await existing.disconnect(force=True)

        gq.voice_client = await voice_channel.connect(self_deaf=True, timeout=20.0)
        logger.info(f"Connected to {voice_channel.name} in {voice_channel.guild.name}")

    async def pause(self, guild_id: int) -> Outcome:
        gq = self._active_queue(guild_id)
        if gq.voice_client.is_paused():
            return Outcome.ALREADY
        gq.voice_client.pause()
        self._emit(EventKind.PAUSED, guild_id)
        return Outcome.DONE

    async def resume(self, guild_id: int) -> Outcome:
        gq = self._active_queue(guild_id)
        if not gq.voice_client.is_paused():
            return Outcome.ALREADY
        gq.voice_client.resume()
        self._emit(EventKind.RESUMED, guild_id)
        return Outcome.DONE

    async def skip(self, guild_id: int):
        gq = self._active_queue(guild_id)
        gq.skip_requested = True
        # Completion callback advances the play loop
        gq.voice_client.stop()

    async def stop(self, guild_id: int):
        gq = self.queues.get(guild_id)
        if gq is not None:
            gq.entries.clear()
            gq.current = None
            if gq.task:
                gq.task.cancel()
            if gq.voice_client and (gq.voice_client.is_playing() or gq.voice_client.is_paused()):
                gq.voice_client.stop()
            gq.last_activity = datetime.now(UTC)
        self._release(guild_id)

    async def set_volume(self, guild_id: int, volume: int):
        gq = self.get_queue(guild_id)
        gq.volume = volume
        vc = gq.voice_client
        if vc and isinstance(vc.source, discord.PCMVolumeTransformer):
            vc.source.volume = volume / 100
        self._emit(EventKind.VOLUME_CHANGED, guild_id, volume=volume)

    async def set_loop_mode(self, guild_id: int, mode: LoopMode):
        self.get_queue(guild_id).loop_mode = mode
        self._emit(EventKind.LOOP_CHANGED, guild_id, loop_mode=mode)

    def _voice_connected(self, guild_id: int) -> bool | None:
        gq = self.queues.get(guild_id)
        if gq is None or gq.voice_client is None:
            return None
        return gq.voice_client.is_connected()

    def get_queue_snapshot(self, guild_id: int) -> QueueSnapshot:
        gq = self.queues.get(guild_id)
        if gq is None:
            return QueueSnapshot(current=None)
        return QueueSnapshot(
            current=gq.current.track if gq.current else None,
            upcoming=self._upcoming(gq),
        )

    async def teardown(self, guild_id: int):
        gq = self.queues.pop(guild_id, None)
        self._emit(EventKind.DISCONNECTED, guild_id)
        self._release(guild_id)
        if gq is None:
            return
        gq.entries.clear()
        gq.current = None
        if gq.task:
            gq.task.cancel()
        if gq.voice_client:
            if gq.voice_client.is_playing() or gq.voice_client.is_paused():
                gq.voice_client.stop()
            try:
                await gq.voice_client.disconnect(force=True)
            except Exception as e:
                logger.debug(f"Voice disconnect failed for guild {guild_id}: {e}")

    async def shutdown(self):
        if self._idle_check_task:
            self._idle_check_task.cancel()
        for guild_id in list(self.queues):
            await self.teardown(guild_id)

    # ==================== PLAYBACK LOOP ====================

    def _active_queue(self, guild_id: int) -> GuildQueue:
        gq = self.queues.get(guild_id)
        if gq is None or gq.current is None or gq.voice_client is None:
            raise NotPlayingError()
        return gq

    @staticmethod
    def _upcoming(gq: GuildQueue) -> tuple[Track, ...]:
        return tuple(entry.track for entry in gq.entries)

    @staticmethod
    def _next_entry(gq: GuildQueue) -> QueueEntry | None:
        previous, gq.current = gq.current, None
        skipped, gq.skip_requested = gq.skip_requested, False
        if previous is not None:
            if gq.loop_mode is LoopMode.TRACK and not skipped:
                return previous
            if gq.loop_mode is LoopMode.QUEUE:
                gq.entries.append(previous)
        return gq.entries.popleft() if gq.entries else None

    async def _play_loop(self, gq: GuildQueue, generation: int):
        """Main playback loop for a guild."""
        guild_id = gq.guild_id
        loop = asyncio.get_running_loop()

        try:
            while gq.voice_client and gq.voice_client.is_connected():
                if not self._is_current(guild_id, generation):
                    break

                entry = self._next_entry(gq)
                if entry is None:
                    if self._emit(EventKind.QUEUE_FINISHED, guild_id, generation):
                        await self.announce_finished(guild_id)
                    break

                gq.current = entry
                gq.last_activity = datetime.now(UTC)

                try:
                    if not entry.stream_url:
                        entry.stream_url = await self.youtube.get_stream_url(entry.video_id)
                    source = self.source_factory(entry.stream_url, gq.volume)
                except Exception as e:
                    gq.current = None
                    await self.handle_engine_error(guild_id, e)
                    continue

                if not self._is_current(guild_id, generation):
                    source.cleanup()
                    break

                play_complete = asyncio.Event()

                def after_play(error, done=play_complete):
                    if error:
                        logger.error(f"Playback error: {error}")
                    loop.call_soon_threadsafe(done.set)

                gq.voice_client.play(source, after=after_play)
                logger.info(f"Playing: {entry.track.title} | {entry.track.author} | guild {guild_id}")
                self._emit(
                    EventKind.TRACK_STARTED, guild_id, generation,
                    track=entry.track, upcoming=self._upcoming(gq),
                )
                await self.announce_started(guild_id, entry.track)

                # Watchdog: song duration plus a buffer, 10 minutes when unknown
                timeout_duration = float(entry.track.duration_seconds or 600) + 20
                try:
                    await asyncio.wait_for(play_complete.wait(), timeout=timeout_duration)
                except asyncio.TimeoutError:
                    logger.warning(f"WATCHDOG: {entry.track.title} timed out after {timeout_duration}s, force stopping")
                    if gq.voice_client and gq.voice_client.is_playing():
                        gq.voice_client.stop()
        except asyncio.CancelledError:
            logger.debug(f"Play loop cancelled for guild {guild_id}")
        except Exception as e:
            logger.error(f"Play loop crashed for guild {guild_id}: {e}")
            await self.handle_engine_error(guild_id, e)
        finally:
            gq.current = None
            gq.last_activity = datetime.now(UTC)

    async def _idle_check_loop(self):
        """Check for idle queues and disconnect."""
        while True:
            await asyncio.sleep(60)
            await self.disconnect_idle()

    async def disconnect_idle(self):
        now = datetime.now(UTC)
        for guild_id, gq in list(self.queues.items()):
            if gq.is_running or not gq.voice_client:
                continue
            if (now - gq.last_activity).total_seconds() > self.idle_timeout:
                logger.info(f"Disconnecting from {guild_id} due to inactivity")
                await self.teardown(guild_id)
