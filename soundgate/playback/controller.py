"""
Playback Controller - Routes chat and dashboard requests to the owning backend
"""
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

import discord

from soundgate.playback.adapters.base import BackendAdapter
from soundgate.playback.errors import (
    AuthRequiredError,
    BackendUnavailableError,
    InvalidRequestError,
    NotPlayingError,
    PlaybackError,
    RemediationGuard,
    TransientNetworkError,
    as_playback_error,
)
from soundgate.playback.models import LoopMode, Outcome, QueueSnapshot
from soundgate.playback.radio import RadioManager
from soundgate.playback.state import PlaybackAggregator

logger = logging.getLogger(__name__)

SPOTIFY_URL = re.compile(r"(https://open\.spotify\.com/(?:track|album|playlist)/[a-zA-Z0-9]+)")


def normalize_query(query: str | None) -> str:
    """Trim the query and reduce Spotify links to their canonical form."""
    query = (query or "").strip()
    if query.startswith("spotify:"):
        query = query[len("spotify:"):].strip()
    match = SPOTIFY_URL.search(query)
    if match:
        query = match.group(1)
    return query


@dataclass(frozen=True)
class ControlResult:
    success: bool
    message: str | None = None

    def to_dict(self) -> dict:
        payload = {"success": self.success}
        if self.message is not None:
            payload["message"] = self.message
        return payload


class PlaybackController:
    """
    Caller boundary for every playback request.

    Input is validated here, before any adapter sees it. Adapters are tried
    in preference order and only one of them may own a guild's session.
    """

    def __init__(
        self,
        state: PlaybackAggregator,
        adapters: list[BackendAdapter],
        radio: RadioManager,
        remediate: Callable[[], Awaitable[bool]] | None = None,
        remediation_window: float = 300.0,
    ):
        self.state = state
        self.adapters = adapters
        self.radio = radio
        self.remediate = remediate
        self.remediation_guard = RemediationGuard(remediation_window)
        self.radio.before_start = self.release_queue_session

    # ==================== LOOKUP ====================

    def owning_adapter(self, guild_id: int) -> BackendAdapter | None:
        owner = self.state.owner(guild_id)
        for adapter in self.adapters:
            if adapter.name == owner:
                return adapter
        return None

    def has_session(self, guild_id: int) -> bool:
        return self.owning_adapter(guild_id) is not None

    def _require_adapter(self, guild_id: int) -> BackendAdapter:
        adapter = self.owning_adapter(guild_id)
        if adapter is None:
            raise NotPlayingError()
        return adapter

    # ==================== PLAY ====================

    async def play(
        self,
        voice_channel: discord.VoiceChannel,
        query: str,
        requester: discord.abc.User,
        text_channel: discord.abc.Messageable | None = None,
    ) -> str:
        """Queue `query`. Returns the name of the adapter that accepted it."""
        query = normalize_query(query)
        if not query:
            raise InvalidRequestError("Please provide a song name or URL!")
        if voice_channel is None:
            raise InvalidRequestError("You need to be in a voice channel!")

        guild_id = voice_channel.guild.id
        if self.radio.has_session(guild_id):
            logger.info(f"Stopping radio in guild {guild_id} for queue playback")
            await self.radio.teardown(guild_id)

        try:
            return await self._route_play(voice_channel, query, requester, text_channel)
        except AuthRequiredError:
            if not await self._remediate_auth():
                raise
            logger.info(f"Retrying play in guild {guild_id} after refreshing credentials")
            return await self._route_play(voice_channel, query, requester, text_channel)

    async def _route_play(self, voice_channel, query, requester, text_channel) -> str:
        owner = self.owning_adapter(voice_channel.guild.id)
        candidates = [owner] if owner is not None else self.adapters

        last_error: PlaybackError | None = None
        for adapter in candidates:
            try:
                await adapter.play(voice_channel, query, requester, text_channel)
                return adapter.name
            except (BackendUnavailableError, TransientNetworkError) as e:
                logger.warning(f"{adapter.name} could not play '{query}': {e.message}")
                last_error = e
            except PlaybackError:
                raise
            except Exception as e:
                logger.error(f"{adapter.name} failed to play '{query}': {e}")
                raise as_playback_error(e) from e
        raise last_error or BackendUnavailableError("No audio backend is available right now.")

    async def _remediate_auth(self) -> bool:
        if self.remediate is None or not self.remediation_guard.allow("auth"):
            return False
        try:
            return bool(await self.remediate())
        except Exception as e:
            logger.error(f"Credential refresh failed: {e}")
            return False

    # ==================== TRANSPORT ====================

    async def pause(self, guild_id: int) -> Outcome:
        return await self._require_adapter(guild_id).pause(guild_id)

    async def resume(self, guild_id: int) -> Outcome:
        return await self._require_adapter(guild_id).resume(guild_id)

    async def skip(self, guild_id: int):
        await self._require_adapter(guild_id).skip(guild_id)

    async def stop(self, guild_id: int):
        await self._require_adapter(guild_id).stop(guild_id)

    async def set_volume(self, guild_id: int, volume) -> int:
        if isinstance(volume, bool):
            raise InvalidRequestError("Please provide a valid volume level between 0 and 100!")
        try:
            volume = int(volume)
        except (TypeError, ValueError):
            raise InvalidRequestError("Please provide a valid volume level between 0 and 100!")
        if not 0 <= volume <= 100:
            raise InvalidRequestError("Please provide a valid volume level between 0 and 100!")
        await self._require_adapter(guild_id).set_volume(guild_id, volume)
        return volume

    async def set_loop_mode(self, guild_id: int, mode: LoopMode | str | None = None) -> LoopMode:
        """Set the loop mode, or advance off -> track -> queue -> off when `mode` is None."""
        adapter = self._require_adapter(guild_id)
        if mode is None:
            mode = self.state.get(guild_id).loop_mode.next()
        elif not isinstance(mode, LoopMode):
            mode = LoopMode.parse(mode)
        await adapter.set_loop_mode(guild_id, mode)
        return mode

    def queue(self, guild_id: int) -> QueueSnapshot:
        adapter = self.owning_adapter(guild_id)
        if adapter is None:
            return QueueSnapshot(current=None)
        return adapter.get_queue_snapshot(guild_id)

    # ==================== LIFECYCLE ====================

    async def release_queue_session(self, guild_id: int):
        """Tear down whichever adapter holds the guild, along with its voice connection."""
        for adapter in self.adapters:
            await adapter.teardown(guild_id)

    async def handle_voice_disconnect(self, guild_id: int):
        """The bot left voice in this guild: recover radio or drop the queue session."""
        if self.radio.has_session(guild_id):
            await self.radio.handle_voice_disconnect(guild_id)
            return
        for adapter in self.adapters:
            try:
                await adapter.handle_disconnect(guild_id)
            except Exception as e:
                logger.error(f"{adapter.name} failed to handle disconnect in guild {guild_id}: {e}")

    async def forget_guild(self, guild_id: int):
        await self.radio.teardown(guild_id)
        await self.release_queue_session(guild_id)
        self.state.forget_guild(guild_id)

    async def shutdown(self):
        await self.radio.shutdown()
        for adapter in self.adapters:
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.error(f"{adapter.name} shutdown failed: {e}")

    # ==================== REMOTE CONTROL ====================

    @staticmethod
    def _parse_guild(guild_id) -> int:
        if guild_id in (None, ""):
            raise InvalidRequestError("No guild ID provided")
        try:
            return int(guild_id)
        except (TypeError, ValueError):
            raise InvalidRequestError("Invalid guild ID")

    async def control(self, action: str | None, guild_id) -> ControlResult:
        try:
            gid = self._parse_guild(guild_id)
            if action not in ("pause", "resume", "skip", "stop"):
                return ControlResult(False, "Invalid action")
            if not self.has_session(gid):
                return ControlResult(False, "No active queue found")

            if action == "pause":
                if await self.pause(gid) is Outcome.ALREADY:
                    return ControlResult(False, "Already paused")
                return ControlResult(True, "Paused")
            if action == "resume":
                if await self.resume(gid) is Outcome.ALREADY:
                    return ControlResult(False, "Already playing")
                return ControlResult(True, "Resumed")
            if action == "skip":
                await self.skip(gid)
                return ControlResult(True, "Skipped")
            await self.stop(gid)
            return ControlResult(True, "Stopped")
        except PlaybackError as e:
            return ControlResult(False, e.message)
        except Exception as e:
            logger.error(f"Control '{action}' failed for guild {guild_id}: {e}")
            return ControlResult(False, "Internal error")

    async def volume(self, volume, guild_id) -> ControlResult:
        try:
            gid = self._parse_guild(guild_id)
            if not isinstance(volume, (int, float)) or isinstance(volume, bool):
                return ControlResult(False, "Invalid volume level")
            if not 0 <= volume <= 100:
                return ControlResult(False, "Invalid volume level")
            level = int(volume)
            if not self.has_session(gid):
                return ControlResult(False, "No active queue found")
            await self.set_volume(gid, level)
            return ControlResult(True, f"Volume set to {level}%")
        except PlaybackError as e:
            return ControlResult(False, e.message)
        except Exception as e:
            logger.error(f"Volume change failed for guild {guild_id}: {e}")
            return ControlResult(False, "Internal error")

    async def loop(self, mode, guild_id) -> ControlResult:
        try:
            gid = self._parse_guild(guild_id)
            if mode not in [m.value for m in LoopMode]:
                return ControlResult(False, "Invalid loop mode")
            if not self.has_session(gid):
                return ControlResult(False, "No active queue found")
            applied = await self.set_loop_mode(gid, LoopMode(mode))
            return ControlResult(True, f"Loop mode set to {applied.value}")
        except PlaybackError as e:
            return ControlResult(False, e.message)
        except Exception as e:
            logger.error(f"Loop change failed for guild {guild_id}: {e}")
            return ControlResult(False, "Internal error")
