"""
Radio Session Manager - One self-healing continuous stream per guild
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import discord

from soundgate.playback.adapters.ffmpeg import SourceFactory, ffmpeg_source
from soundgate.playback.errors import NotPlayingError, as_playback_error
from soundgate.playback.models import RadioSession
from soundgate.playback.state import PlaybackAggregator

logger = logging.getLogger(__name__)

MAX_RESTART_ATTEMPTS = 5
RESTART_WINDOW_SECS = 10.0
RESTART_BACKOFF_SECS = 5.0


@dataclass
class RadioPlayer:
    """A guild's radio voice connection and the stream currently fed into it."""
    guild_id: int
    voice_client: discord.VoiceClient
    session: RadioSession
    token: int = 0
    restart_count: int = 0
    last_restart: float = 0.0
    restart_task: asyncio.Task | None = None


class RadioManager:
    """
    Keeps at most one radio connection per guild.

    Every (re)subscription bumps the player's stream token; completion
    callbacks carrying an older token belong to a replaced stream and are
    ignored.
    """

    def __init__(
        self,
        state: PlaybackAggregator,
        source_factory: SourceFactory = ffmpeg_source,
        reconnect_timeout: float = 5.0,
        restart_backoff: float = RESTART_BACKOFF_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.source_factory = source_factory
        self.reconnect_timeout = reconnect_timeout
        self.restart_backoff = restart_backoff
        self._clock = clock
        self.players: dict[int, RadioPlayer] = {}
        # Set by the controller: tears down any queue session before a stream starts
        self.before_start: Callable[[int], Awaitable[None]] | None = None

    def has_session(self, guild_id: int) -> bool:
        return guild_id in self.players

    async def start(self, guild: discord.Guild, voice_channel: discord.VoiceChannel, stream_url: str, label: str) -> bool:
        """Start or replace the guild's stream. Returns True when an existing session was reused."""
        if self.before_start is not None:
            await self.before_start(guild.id)

        session = RadioSession(stream_url=stream_url, label=label)
        player = self.players.get(guild.id)

        if player is not None and player.voice_client.is_connected():
            if player.voice_client.channel != voice_channel:
                await player.voice_client.move_to(voice_channel)
            player.session = session
            self._subscribe(player)
            self.state.radio_started(guild.id, session)
            logger.info(f"Radio in guild {guild.id} switched to {label} ({stream_url})")
            return True

        if player is not None:
            # Dead connection: the old stream is gone until a new one is up
            await self.teardown(guild.id)

        try:
            existing = guild.voice_client
            if existing is not None:
                await existing.disconnect(force=True)
            voice_client = await voice_channel.connect(self_deaf=True, timeout=20.0)
        except Exception as e:
            logger.error(f"Radio failed to connect in guild {guild.id}: {e}")
            self.players.pop(guild.id, None)
            self.state.radio_stopped(guild.id)
            raise as_playback_error(e) from e

        player = RadioPlayer(guild_id=guild.id, voice_client=voice_client, session=session)
        self.players[guild.id] = player
        self._subscribe(player)
        self.state.radio_started(guild.id, session)
        logger.info(f"Radio started in guild {guild.id}: {label} ({stream_url})")
        return False

    async def stop(self, guild_id: int):
        player = self.players.pop(guild_id, None)
        if player is None:
            raise NotPlayingError("No radio is currently playing!")
        await self._close(player)
        self.state.radio_stopped(guild_id)
        logger.info(f"Radio stopped in guild {guild_id}")

    async def teardown(self, guild_id: int):
        """Remove the guild's session without reporting anything."""
        player = self.players.pop(guild_id, None)
        if player is not None:
            await self._close(player)
        self.state.radio_stopped(guild_id)

    async def shutdown(self):
        for guild_id in list(self.players):
            await self.teardown(guild_id)

    async def handle_voice_disconnect(self, guild_id: int) -> bool:
        """Give the voice client a short window to come back. Returns False when the session was dropped."""
        player = self.players.get(guild_id)
        if player is None:
            return False

        try:
            await asyncio.wait_for(self._wait_connected(player.voice_client), timeout=self.reconnect_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Radio voice connection in guild {guild_id} did not recover, removing session")
            await self.teardown(guild_id)
            return False

        logger.info(f"Radio voice connection in guild {guild_id} recovered")
        if self.players.get(guild_id) is player and not player.voice_client.is_playing():
            self._subscribe(player)
        return True

    @staticmethod
    async def _wait_connected(voice_client: discord.VoiceClient):
        while not voice_client.is_connected():
            await asyncio.sleep(0.25)

    # ==================== STREAM ====================

    def _subscribe(self, player: RadioPlayer):
        player.token += 1
        token = player.token
        loop = asyncio.get_running_loop()
        voice_client = player.voice_client

        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()

        source = self.source_factory(player.session.stream_url, self.state.get(player.guild_id).volume)

        def after_stream(error):
            if error:
                logger.warning(f"Radio stream error in guild {player.guild_id}: {error}")
            loop.call_soon_threadsafe(self._on_stream_end, player.guild_id, token)

        voice_client.play(source, after=after_stream)

    def _on_stream_end(self, guild_id: int, token: int):
        player = self.players.get(guild_id)
        if player is None or player.token != token:
            return
        if player.restart_task and not player.restart_task.done():
            return
        player.restart_task = asyncio.create_task(self._restart(player, token))

    async def _restart(self, player: RadioPlayer, token: int):
        now = self._clock()
        # A stream that stayed up for a while starts a fresh budget
        if now - player.last_restart > RESTART_WINDOW_SECS:
            player.restart_count = 0
        player.restart_count += 1
        player.last_restart = now

        if player.restart_count > MAX_RESTART_ATTEMPTS:
            logger.warning(
                f"Radio in guild {player.guild_id} restarted {player.restart_count} times rapidly, "
                f"backing off for {self.restart_backoff:.1f}s"
            )
            await asyncio.sleep(self.restart_backoff)
            player.restart_count = 0

        if self.players.get(player.guild_id) is not player or player.token != token:
            return
        if not player.voice_client.is_connected():
            return

        logger.info(f"Resubscribing radio stream in guild {player.guild_id} (attempt {player.restart_count})")
        try:
            self._subscribe(player)
        except Exception as e:
            logger.error(f"Radio resubscribe failed in guild {player.guild_id}: {e}")

    async def _close(self, player: RadioPlayer):
        player.token += 1
        if player.restart_task and not player.restart_task.done():
            player.restart_task.cancel()
        voice_client = player.voice_client
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()
        try:
            await voice_client.disconnect(force=True)
        except Exception as e:
            logger.debug(f"Radio voice disconnect failed for guild {player.guild_id}: {e}")
