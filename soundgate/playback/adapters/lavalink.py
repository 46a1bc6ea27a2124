"""
Lavalink Adapter - Primary queue engine on an external Lavalink node (wavelink)
"""
import asyncio
import logging

import discord
import wavelink

from soundgate.playback.adapters.base import BackendAdapter, Remediation
from soundgate.playback.errors import (
    BackendUnavailableError,
    NoMatchesError,
    NotPlayingError,
    PlaybackError,
    SessionConflictError,
    as_playback_error,
)
from soundgate.playback.models import (
    EventKind,
    LoopMode,
    Outcome,
    QueueSnapshot,
    Track,
    format_duration,
)
from soundgate.playback.state import PlaybackAggregator
from soundgate.services.spotify import SpotifyService, parse_spotify_url

logger = logging.getLogger(__name__)

QUEUE_MODES = {
    LoopMode.OFF: wavelink.QueueMode.normal,
    LoopMode.TRACK: wavelink.QueueMode.loop,
    LoopMode.QUEUE: wavelink.QueueMode.loop_all,
}


def to_track(playable: wavelink.Playable) -> Track:
    seconds = None if playable.is_stream else playable.length // 1000
    return Track(
        title=playable.title,
        source_url=playable.uri,
        thumbnail_url=playable.artwork,
        duration_display=format_duration(seconds),
        author=playable.author or "Unknown",
        duration_seconds=seconds,
        requester_id=getattr(playable.extras, "requester_id", None),
    )


class LavalinkAdapter(BackendAdapter):
    """
    Adapter A.

    Tracks carry the session generation in their extras, so every wavelink
    event can be matched to the play() call that queued its track.
    """

    name = "lavalink"

    def __init__(
        self,
        state: PlaybackAggregator,
        bot: discord.Client,
        uri: str,
        password: str,
        remediate: Remediation | None = None,
        spotify: SpotifyService | None = None,
    ):
        super().__init__(state, remediate)
        self.bot = bot
        self.spotify = spotify
        self.uri = uri
        self.password = password
        self.players: dict[int, wavelink.Player] = {}

    async def connect(self) -> bool:
        """Connect the node pool and register event listeners. Returns False when the node is down."""
        self.bot.add_listener(self.on_wavelink_track_start)
        self.bot.add_listener(self.on_wavelink_track_end)
        self.bot.add_listener(self.on_wavelink_track_exception)
        self.bot.add_listener(self.on_wavelink_inactive_player)
        self.bot.add_listener(self.on_wavelink_websocket_closed)

        nodes = [wavelink.Node(uri=self.uri, password=self.password)]
        try:
            await wavelink.Pool.connect(nodes=nodes, client=self.bot, cache_capacity=100)
            logger.info(f"Connected to Lavalink node at {self.uri}")
            return True
        except Exception as e:
            logger.warning(f"Lavalink node at {self.uri} unavailable, local playback will be used: {e}")
            return False

    def is_available(self) -> bool:
        try:
            node = wavelink.Pool.get_node()
        except wavelink.InvalidNodeException:
            return False
        return node.status is wavelink.NodeStatus.CONNECTED

    # ==================== OPERATIONS ====================

    async def play(self, voice_channel, query, requester, text_channel=None):
        if not self.is_available():
            raise BackendUnavailableError("The Lavalink node is not connected.")

        guild = voice_channel.guild
        owner = self.state.owner(guild.id)
        if owner not in (None, self.name):
            raise SessionConflictError()

        fresh_session = owner is None
        generation = self._claim(guild.id)

        try:
            try:
                playables = await self._search(query)
            except wavelink.LavalinkLoadException as e:
                raise as_playback_error(e) from e
            if not playables:
                raise NoMatchesError(f"No results found for: `{query}`")

            if not self._is_current(guild.id, generation):
                logger.info(f"Dropping stale play of '{query}' in guild {guild.id}")
                return

            player = await self._connect(voice_channel)
        except Exception as e:
            existing = self.players.get(guild.id)
            if fresh_session and self._is_current(guild.id, generation) and not (existing and existing.current):
                self._release(guild.id)
            if isinstance(e, PlaybackError):
                raise
            raise as_playback_error(e) from e

        self._remember_channel(guild.id, text_channel)
        for playable in playables:
            playable.extras = {"requester_id": requester.id, "generation": generation}
        await player.queue.put_wait(playables)
        logger.info(f"Queued {len(playables)} track(s) in guild {guild.id}: {playables[0].title}")

        tracks = [to_track(p) for p in playables]
        if player.current is None and not player.playing:
            await player.play(player.queue.get())
            if len(tracks) > 1:
                await self.announce_added(guild.id, tracks)
        else:
            self._emit(EventKind.TRACK_ADDED, guild.id, generation, upcoming=self._upcoming(player))
            await self.announce_added(guild.id, tracks)

    async def _search(self, query: str) -> list[wavelink.Playable]:
        if parse_spotify_url(query) and self.spotify is not None and self.spotify.enabled:
            # Look Spotify tracks up by name so the node needs no Spotify source plugin
            wanted = await self.spotify.get_tracks(query)
            found = await asyncio.gather(
                *(wavelink.Playable.search(t.search_query) for t in wanted),
                return_exceptions=True,
            )
            return [results[0] for results in found if isinstance(results, list) and results]

        results = await wavelink.Playable.search(query)
        if isinstance(results, wavelink.Playlist):
            return list(results.tracks)
        return [results[0]] if results else []

    async def _connect(self, voice_channel: discord.VoiceChannel) -> wavelink.Player:
        guild = voice_channel.guild
        current = self.players.get(guild.id)
        if current is None and isinstance(guild.voice_client, wavelink.Player):
            current = guild.voice_client
        if current is not None and current.connected:
            if current.channel != voice_channel:
                await current.move_to(voice_channel)
            self.players[guild.id] = current
            return current

        if guild.voice_client is not None:
            logger.info(f"Replacing foreign voice client in guild {guild.id}")
            await guild.voice_client.disconnect(force=True)

        player: wavelink.Player = await voice_channel.connect(cls=wavelink.Player, self_deaf=True, timeout=20.0)
        player.autoplay = wavelink.AutoPlayMode.partial
        player.queue.mode = QUEUE_MODES[self.state.get(guild.id).loop_mode]
        await player.set_volume(self.state.get(guild.id).volume)
        self.players[guild.id] = player
        logger.info(f"Connected to {voice_channel.name} in {guild.name} (lavalink)")
        return player

    def _player(self, guild_id: int) -> wavelink.Player:
        player = self.players.get(guild_id)
        if player is None or player.current is None:
            raise NotPlayingError()
        return player

    async def pause(self, guild_id: int) -> Outcome:
        player = self._player(guild_id)
        if player.paused:
            return Outcome.ALREADY
        await player.pause(True)
        self._emit(EventKind.PAUSED, guild_id)
        return Outcome.DONE

    async def resume(self, guild_id: int) -> Outcome:
        player = self._player(guild_id)
        if not player.paused:
            return Outcome.ALREADY
        await player.pause(False)
        self._emit(EventKind.RESUMED, guild_id)
        return Outcome.DONE

    async def skip(self, guild_id: int):
        player = self._player(guild_id)
        await player.skip(force=True)

    async def stop(self, guild_id: int):
        self._release(guild_id)
        player = self.players.get(guild_id)
        if player is not None:
            player.queue.clear()
            await player.stop()

    async def set_volume(self, guild_id: int, volume: int):
        player = self.players.get(guild_id)
        if player is not None:
            await player.set_volume(volume)
        self._emit(EventKind.VOLUME_CHANGED, guild_id, volume=volume)

    async def set_loop_mode(self, guild_id: int, mode: LoopMode):
        player = self.players.get(guild_id)
        if player is not None:
            player.queue.mode = QUEUE_MODES[mode]
        self._emit(EventKind.LOOP_CHANGED, guild_id, loop_mode=mode)

    def _voice_connected(self, guild_id: int) -> bool | None:
        player = self.players.get(guild_id)
        if player is None:
            return None
        return player.connected

    def get_queue_snapshot(self, guild_id: int) -> QueueSnapshot:
        player = self.players.get(guild_id)
        if player is None or player.current is None:
            return QueueSnapshot(current=None)
        return QueueSnapshot(current=to_track(player.current), upcoming=self._upcoming(player))

    async def teardown(self, guild_id: int):
        player = self.players.pop(guild_id, None)
        self._emit(EventKind.DISCONNECTED, guild_id)
        self._release(guild_id)
        if player is None:
            return
        player.queue.clear()
        try:
            await player.disconnect()
        except Exception as e:
            logger.debug(f"Lavalink player disconnect failed for guild {guild_id}: {e}")

    async def shutdown(self):
        for guild_id in list(self.players):
            await self.teardown(guild_id)

    @staticmethod
    def _upcoming(player: wavelink.Player) -> tuple[Track, ...]:
        return tuple(to_track(p) for p in player.queue)

    # ==================== WAVELINK EVENTS ====================

    async def on_wavelink_track_start(self, payload: wavelink.TrackStartEventPayload):
        player = payload.player
        if player is None or player.guild is None:
            return
        guild_id = player.guild.id
        try:
            generation = getattr(payload.track.extras, "generation", None)
            track = to_track(payload.track)
            if self._emit(EventKind.TRACK_STARTED, guild_id, generation, track=track, upcoming=self._upcoming(player)):
                logger.info(f"Playing: {track.title} | {track.author} | guild {guild_id}")
                await self.announce_started(guild_id, track)
        except Exception as e:
            logger.error(f"Failed to handle track start in guild {guild_id}: {e}")

    async def on_wavelink_track_end(self, payload: wavelink.TrackEndEventPayload):
        player = payload.player
        if player is None or player.guild is None or payload.reason == "replaced":
            return
        guild_id = player.guild.id
        try:
            generation = getattr(payload.track.extras, "generation", None)
            if player.queue.mode is wavelink.QueueMode.normal and player.queue.is_empty:
                if self._emit(EventKind.QUEUE_FINISHED, guild_id, generation):
                    await self.announce_finished(guild_id)
        except Exception as e:
            logger.error(f"Failed to handle track end in guild {guild_id}: {e}")

    async def on_wavelink_track_exception(self, payload: wavelink.TrackExceptionEventPayload):
        player = payload.player
        if player is None or player.guild is None:
            return
        generation = getattr(payload.track.extras, "generation", None)
        if not self._is_current(player.guild.id, generation):
            return
        message = payload.exception.get("message") if isinstance(payload.exception, dict) else payload.exception
        await self.handle_engine_error(player.guild.id, Exception(message or "Track exception"))

    async def on_wavelink_inactive_player(self, player: wavelink.Player):
        if player.guild is None or self.players.get(player.guild.id) is not player:
            return
        logger.info(f"Lavalink player in guild {player.guild.id} inactive, disconnecting")
        try:
            await self._drop_session(player.guild.id)
        except Exception as e:
            logger.error(f"Failed to tear down inactive player in guild {player.guild.id}: {e}")

    async def on_wavelink_websocket_closed(self, payload: wavelink.WebsocketClosedEventPayload):
        player = payload.player
        code = int(getattr(payload.code, "value", payload.code))
        logger.warning(f"Lavalink voice websocket closed (code {code}, by remote: {payload.by_remote})")
        # 4014: kicked or channel deleted, 4006: session invalid
        if player is None or player.guild is None or code not in (4014, 4006):
            return
        try:
            await self._drop_session(player.guild.id)
        except Exception as e:
            logger.error(f"Failed to handle closed websocket in guild {player.guild.id}: {e}")
