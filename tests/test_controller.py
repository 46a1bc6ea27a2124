import asyncio

import pytest

from soundgate.playback.adapters.ffmpeg import FFmpegAdapter
from soundgate.playback.controller import PlaybackController, normalize_query
from soundgate.playback.errors import (
    AuthRequiredError,
    BackendUnavailableError,
    InvalidRequestError,
    NoMatchesError,
    NotPlayingError,
    TransientNetworkError,
)
from soundgate.playback.models import LoopMode, Outcome

from tests.conftest import FakeEngine, FakeVoiceClient, fake_source_factory, settle


@pytest.fixture
def engines(state):
    return FakeEngine(state, "lavalink"), FakeEngine(state, "ffmpeg")


@pytest.fixture
def remediation_calls():
    return []


@pytest.fixture
def controller(state, engines, radio, remediation_calls):
    async def remediate():
        remediation_calls.append(1)
        return True

    return PlaybackController(state, list(engines), radio, remediate=remediate)


def test_normalize_query():
    assert normalize_query("  lofi beats ") == "lofi beats"
    assert normalize_query("spotify:https://open.spotify.com/track/abc123?si=xyz") == \
        "https://open.spotify.com/track/abc123"
    assert normalize_query(None) == ""


async def test_play_routes_to_preferred_adapter(controller, state, voice_channel, user):
    assert await controller.play(voice_channel, "song", user) == "lavalink"
    assert state.owner(voice_channel.guild.id) == "lavalink"
    assert state.get(voice_channel.guild.id).current_track.title == "song"


async def test_play_rejects_bad_input(controller, voice_channel, user):
    with pytest.raises(InvalidRequestError, match="Please provide a song name or URL!"):
        await controller.play(voice_channel, "   ", user)
    with pytest.raises(InvalidRequestError, match="voice channel"):
        await controller.play(None, "song", user)


@pytest.mark.parametrize("error", [BackendUnavailableError(), TransientNetworkError()])
async def test_play_falls_back_to_next_adapter(controller, engines, state, voice_channel, user, error):
    primary, fallback = engines
    primary.play_error = error

    assert await controller.play(voice_channel, "song", user) == "ffmpeg"
    assert state.owner(voice_channel.guild.id) == "ffmpeg"
    assert ("play", "song") in fallback.calls


async def test_no_matches_does_not_fall_back(controller, engines, voice_channel, user):
    primary, fallback = engines
    primary.play_error = NoMatchesError()

    with pytest.raises(NoMatchesError):
        await controller.play(voice_channel, "nothing", user)
    assert fallback.calls == []


async def test_all_adapters_unavailable(controller, engines, voice_channel, user):
    for engine in engines:
        engine.play_error = BackendUnavailableError()
    with pytest.raises(BackendUnavailableError):
        await controller.play(voice_channel, "song", user)


async def test_second_play_goes_to_session_owner(controller, engines, state, voice_channel, user):
    primary, fallback = engines
    primary.play_error = BackendUnavailableError()
    await controller.play(voice_channel, "first", user)
    primary.play_error = None

    assert await controller.play(voice_channel, "second", user) == "ffmpeg"
    assert [t.title for t in state.get(voice_channel.guild.id).upcoming] == ["second"]


async def test_auth_failure_remediates_once_and_retries(controller, engines, voice_channel, user, remediation_calls):
    primary, _ = engines
    primary.play_errors = [AuthRequiredError()]

    assert await controller.play(voice_channel, "song", user) == "lavalink"
    assert remediation_calls == [1]


async def test_auth_remediation_is_rate_limited(controller, engines, voice_channel, user, remediation_calls):
    primary, _ = engines
    primary.play_error = AuthRequiredError()

    with pytest.raises(AuthRequiredError):
        await controller.play(voice_channel, "song", user)
    with pytest.raises(AuthRequiredError):
        await controller.play(voice_channel, "song", user)
    assert remediation_calls == [1]


async def test_pause_and_resume_are_idempotent(controller, state, voice_channel, user):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user)

    assert await controller.pause(gid) is Outcome.DONE
    assert await controller.pause(gid) is Outcome.ALREADY
    assert state.get(gid).is_paused

    assert await controller.resume(gid) is Outcome.DONE
    assert await controller.resume(gid) is Outcome.ALREADY
    assert state.get(gid).is_playing


async def test_transport_without_session(controller):
    with pytest.raises(NotPlayingError, match="There is nothing playing!"):
        await controller.pause(1)
    with pytest.raises(NotPlayingError):
        await controller.skip(1)
    assert controller.queue(1).current is None


async def test_volume_validation(controller, state, voice_channel, user):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user)

    with pytest.raises(InvalidRequestError, match="between 0 and 100"):
        await controller.set_volume(gid, 150)
    for flag in (True, False):
        with pytest.raises(InvalidRequestError):
            await controller.set_volume(gid, flag)
    assert state.get(gid).volume == 50

    assert await controller.set_volume(gid, 75) == 75
    assert state.get(gid).volume == 75


async def test_loop_mode_cycles(controller, state, voice_channel, user):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user)

    assert await controller.set_loop_mode(gid) is LoopMode.TRACK
    assert await controller.set_loop_mode(gid) is LoopMode.QUEUE
    assert await controller.set_loop_mode(gid) is LoopMode.OFF
    assert await controller.set_loop_mode(gid, "q") is LoopMode.QUEUE
    assert state.get(gid).loop_mode is LoopMode.QUEUE

    with pytest.raises(InvalidRequestError, match="Invalid loop mode"):
        await controller.set_loop_mode(gid, "sideways")


async def test_stop_releases_session(controller, state, voice_channel, user):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user)
    await controller.stop(gid)

    assert state.owner(gid) is None
    assert state.get(gid).current_track is None
    with pytest.raises(NotPlayingError):
        await controller.pause(gid)


async def test_play_stops_radio(controller, radio, guild, voice_channel, user):
    await radio.start(guild, voice_channel, "https://radio.test/lofi", "Lofi Radio")
    assert radio.has_session(guild.id)

    await controller.play(voice_channel, "song", user)
    assert not radio.has_session(guild.id)
    assert controller.state.radio_session(guild.id) is None


async def test_radio_tears_down_queue_session(controller, engines, radio, state, guild, voice_channel, user):
    primary, _ = engines
    await controller.play(voice_channel, "song", user)

    await radio.start(guild, voice_channel, "https://radio.test/lofi", "Lofi Radio")
    assert ("teardown", guild.id) in primary.calls
    assert state.owner(guild.id) is None
    assert state.get(guild.id).current_track is None
    assert radio.has_session(guild.id)


async def test_voice_disconnect_drops_queue_session(controller, engines, state, voice_channel, user, text_channel):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user, text_channel)
    engines[0].voice[gid] = False

    await controller.handle_voice_disconnect(gid)
    assert state.owner(gid) is None
    assert "👋 Disconnected from voice channel" in text_channel.sent


# ==================== REMOTE CONTROL ====================

async def test_control_validation(controller):
    assert (await controller.control("pause", None)).to_dict() == {"success": False, "message": "No guild ID provided"}
    assert (await controller.control("pause", "abc")).message == "Invalid guild ID"
    assert (await controller.control("rewind", "1")).message == "Invalid action"
    assert (await controller.control("pause", "1")).to_dict() == {"success": False, "message": "No active queue found"}


async def test_control_actions(controller, state, voice_channel, user):
    gid = str(voice_channel.guild.id)
    await controller.play(voice_channel, "song", user)

    result = await controller.control("pause", gid)
    assert result.success and result.message == "Paused"
    result = await controller.control("pause", gid)
    assert not result.success and result.message == "Already paused"

    assert (await controller.control("resume", gid)).message == "Resumed"
    assert (await controller.control("resume", gid)).message == "Already playing"
    assert (await controller.control("skip", gid)).message == "Skipped"

    await controller.play(voice_channel, "again", user)
    assert (await controller.control("stop", gid)).message == "Stopped"
    assert state.owner(voice_channel.guild.id) is None


async def test_remote_volume(controller, state, voice_channel, user):
    gid = str(voice_channel.guild.id)
    assert (await controller.volume(50, gid)).message == "No active queue found"

    await controller.play(voice_channel, "song", user)
    for bad in ("50", True, 150, -1, None):
        result = await controller.volume(bad, gid)
        assert result.to_dict() == {"success": False, "message": "Invalid volume level"}

    result = await controller.volume(30, gid)
    assert result.to_dict() == {"success": True, "message": "Volume set to 30%"}
    assert state.get(voice_channel.guild.id).volume == 30


async def test_remote_loop(controller, state, voice_channel, user):
    gid = str(voice_channel.guild.id)
    await controller.play(voice_channel, "song", user)

    assert (await controller.loop("sideways", gid)).message == "Invalid loop mode"
    result = await controller.loop("track", gid)
    assert result.success
    assert state.get(voice_channel.guild.id).loop_mode is LoopMode.TRACK


# ==================== VOICE EVENTS ====================

async def test_disconnect_of_live_connection_is_ignored(controller, state, voice_channel, user, text_channel):
    gid = voice_channel.guild.id
    await controller.play(voice_channel, "song", user, text_channel)

    await controller.handle_voice_disconnect(gid)
    assert state.owner(gid) == "lavalink"
    assert state.get(gid).current_track.title == "song"
    assert text_channel.sent == []


async def test_radio_leaving_voice_does_not_cancel_queued_play(state, youtube, radio, guild, voice_channel, user, monkeypatch):
    adapter = FFmpegAdapter(state, youtube, source_factory=fake_source_factory)
    controller = PlaybackController(state, [adapter], radio)
    await radio.start(guild, voice_channel, "https://radio.test/lofi", "Lofi Radio")

    # discord.py reports the bot's own voice state change as a separate event
    voice_events = []
    leave_voice = FakeVoiceClient.disconnect

    async def disconnect_and_report(self, *, force=False):
        await leave_voice(self, force=force)
        voice_events.append(asyncio.create_task(controller.handle_voice_disconnect(guild.id)))

    monkeypatch.setattr(FakeVoiceClient, "disconnect", disconnect_and_report)
    youtube.resolve_gate = asyncio.Event()

    pending = asyncio.create_task(controller.play(voice_channel, "song", user))
    await settle()
    await asyncio.gather(*voice_events)
    youtube.resolve_gate.set()

    assert await pending == "ffmpeg"
    await settle()
    assert state.owner(guild.id) == "ffmpeg"
    assert state.get(guild.id).current_track.title == "song"
    assert voice_channel.connect_calls == 2

    monkeypatch.undo()
    await adapter.shutdown()
