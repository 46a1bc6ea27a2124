import asyncio

import pytest

from soundgate.playback.adapters.ffmpeg import FFmpegAdapter
from soundgate.playback.errors import (
    BackendUnavailableError,
    NoMatchesError,
    NotPlayingError,
    SessionConflictError,
    TransientNetworkError,
)
from soundgate.playback.models import BackendStatus, ConnectionStatus, LoopMode, Outcome
from soundgate.services.youtube import YTTrack

from tests.conftest import fake_source_factory, settle


def played_urls(guild):
    return [source.url for source in guild.voice_client.played]


async def test_play_starts_track(ffmpeg_adapter, state, guild, voice_channel, user, text_channel):
    await ffmpeg_adapter.play(voice_channel, "first song", user, text_channel)
    await settle()

    snap = state.get(guild.id)
    assert snap.owner == "ffmpeg"
    assert snap.is_playing
    assert snap.current_track.title == "first song"
    assert snap.connection_status is ConnectionStatus.CONNECTED
    assert played_urls(guild) == ["https://stream.test/first_song_"]
    assert text_channel.sent[-1] == "🎵 Playing: **first song** - `3:00` - Requested by <@42>"


async def test_second_play_is_queued(ffmpeg_adapter, state, guild, voice_channel, user, text_channel):
    await ffmpeg_adapter.play(voice_channel, "first", user, text_channel)
    await settle()
    await ffmpeg_adapter.play(voice_channel, "second", user, text_channel)

    snap = state.get(guild.id)
    assert snap.current_track.title == "first"
    assert [t.title for t in snap.upcoming] == ["second"]
    assert text_channel.sent[-1] == "✅ Added **second** - `3:00` to the queue"
    assert voice_channel.connect_calls == 1


async def test_playlist_announces_count(ffmpeg_adapter, youtube, voice_channel, user, text_channel):
    youtube.results["mix"] = [
        YTTrack(video_id=f"video{i:06d}", title=f"Track {i}", artist="Artist", duration_seconds=60)
        for i in range(3)
    ]
    await ffmpeg_adapter.play(voice_channel, "mix", user, text_channel)
    await settle()
    assert "✅ Added **3** songs to the queue" in text_channel.sent


async def test_track_end_advances_then_finishes(ffmpeg_adapter, state, guild, voice_channel, user, text_channel):
    await ffmpeg_adapter.play(voice_channel, "first", user, text_channel)
    await settle()
    await ffmpeg_adapter.play(voice_channel, "second", user, text_channel)

    guild.voice_client.finish()
    await settle(10)
    assert state.get(guild.id).current_track.title == "second"
    assert played_urls(guild)[-1] == "https://stream.test/second_____"

    guild.voice_client.finish()
    await settle(10)
    snap = state.get(guild.id)
    assert snap.current_track is None
    assert not snap.is_playing
    assert text_channel.sent[-1] == "🏁 Queue finished!"


async def test_stale_play_after_stop_is_dropped(ffmpeg_adapter, state, youtube, guild, voice_channel, user):
    youtube.resolve_gate = asyncio.Event()
    pending = asyncio.create_task(ffmpeg_adapter.play(voice_channel, "slow", user))
    await settle()
    assert state.owner(guild.id) == "ffmpeg"

    await ffmpeg_adapter.stop(guild.id)
    youtube.resolve_gate.set()
    await pending
    await settle()

    assert state.owner(guild.id) is None
    assert state.get(guild.id).current_track is None
    assert voice_channel.connect_calls == 0


async def test_pause_resume(ffmpeg_adapter, state, guild, voice_channel, user):
    with pytest.raises(NotPlayingError):
        await ffmpeg_adapter.pause(guild.id)

    await ffmpeg_adapter.play(voice_channel, "song", user)
    await settle()

    assert await ffmpeg_adapter.pause(guild.id) is Outcome.DONE
    assert await ffmpeg_adapter.pause(guild.id) is Outcome.ALREADY
    assert state.get(guild.id).is_paused
    assert await ffmpeg_adapter.resume(guild.id) is Outcome.DONE
    assert await ffmpeg_adapter.resume(guild.id) is Outcome.ALREADY
    assert state.get(guild.id).is_playing


async def test_track_loop_repeats_until_skipped(ffmpeg_adapter, state, guild, voice_channel, user):
    await ffmpeg_adapter.play(voice_channel, "first", user)
    await settle()
    await ffmpeg_adapter.play(voice_channel, "second", user)
    await ffmpeg_adapter.set_loop_mode(guild.id, LoopMode.TRACK)

    guild.voice_client.finish()
    await settle(10)
    assert state.get(guild.id).current_track.title == "first"

    await ffmpeg_adapter.skip(guild.id)
    await settle(10)
    assert state.get(guild.id).current_track.title == "second"


async def test_queue_loop_requeues_finished_track(ffmpeg_adapter, state, guild, voice_channel, user):
    await ffmpeg_adapter.play(voice_channel, "first", user)
    await settle()
    await ffmpeg_adapter.play(voice_channel, "second", user)
    await ffmpeg_adapter.set_loop_mode(guild.id, LoopMode.QUEUE)

    guild.voice_client.finish()
    await settle(10)
    snap = state.get(guild.id)
    assert snap.current_track.title == "second"
    assert [t.title for t in snap.upcoming] == ["first"]


async def test_volume_updates_state(ffmpeg_adapter, state, guild, voice_channel, user):
    await ffmpeg_adapter.play(voice_channel, "song", user)
    await settle()
    await ffmpeg_adapter.set_volume(guild.id, 80)
    assert state.get(guild.id).volume == 80
    assert ffmpeg_adapter.get_queue(guild.id).volume == 80


async def test_missing_ffmpeg_is_unavailable(state, youtube, voice_channel, user):
    state.set_backend_status(BackendStatus.MISSING)
    adapter = FFmpegAdapter(state, youtube, source_factory=fake_source_factory)
    with pytest.raises(BackendUnavailableError):
        await adapter.play(voice_channel, "song", user)


async def test_foreign_owner_conflicts(ffmpeg_adapter, state, guild, voice_channel, user):
    state.claim(guild.id, "lavalink")
    with pytest.raises(SessionConflictError):
        await ffmpeg_adapter.play(voice_channel, "song", user)
    assert state.owner(guild.id) == "lavalink"


async def test_failed_resolution_releases_session(ffmpeg_adapter, state, youtube, guild, voice_channel, user):
    youtube.resolve_error = NoMatchesError()
    with pytest.raises(NoMatchesError):
        await ffmpeg_adapter.play(voice_channel, "song", user)
    assert state.owner(guild.id) is None


async def test_stream_error_skips_to_next(ffmpeg_adapter, state, youtube, guild, voice_channel, user, text_channel):
    await ffmpeg_adapter.play(voice_channel, "first", user, text_channel)
    await settle()
    await ffmpeg_adapter.play(voice_channel, "second", user, text_channel)

    youtube.stream_error = TransientNetworkError()
    guild.voice_client.finish()
    await settle(10)

    assert "⚠️ A network error interrupted playback." in text_channel.sent
    assert text_channel.sent[-1] == "🏁 Queue finished!"
    assert state.get(guild.id).current_track is None


async def test_teardown_disconnects(ffmpeg_adapter, state, guild, voice_channel, user):
    await ffmpeg_adapter.play(voice_channel, "song", user)
    await settle()
    vc = guild.voice_client

    await ffmpeg_adapter.teardown(guild.id)
    assert not vc.is_connected()
    assert state.owner(guild.id) is None
    assert state.get(guild.id).connection_status is ConnectionStatus.DISCONNECTED
    assert ffmpeg_adapter.get_queue_snapshot(guild.id).current is None
