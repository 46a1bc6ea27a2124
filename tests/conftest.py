"""
Shared fakes for the playback tests: voice objects, a YouTube stand-in and a scripted engine adapter
"""
import asyncio

import pytest

from soundgate.playback.adapters.base import BackendAdapter
from soundgate.playback.adapters.ffmpeg import FFmpegAdapter
from soundgate.playback.errors import NoMatchesError, NotPlayingError
from soundgate.playback.models import (
    BackendStatus,
    EventKind,
    Outcome,
    QueueSnapshot,
    Track,
)
from soundgate.playback.radio import RadioManager
from soundgate.playback.state import PlaybackAggregator
from soundgate.services.youtube import YTTrack


class FakeSource:
    def __init__(self, url: str, volume: int):
        self.url = url
        self.volume = volume / 100
        self.cleaned_up = False

    def cleanup(self):
        self.cleaned_up = True


def fake_source_factory(url: str, volume: int) -> FakeSource:
    return FakeSource(url, volume)


class FakeVoiceClient:
    """Mimics discord.VoiceClient: stop() and finish() run the `after` callback like the audio thread does."""

    def __init__(self, channel):
        self.channel = channel
        self.guild = channel.guild
        self.source = None
        self.played = []
        self._after = None
        self._playing = False
        self._paused = False
        self._connected = True
        self.disconnect_calls = 0

    def play(self, source, *, after=None):
        self.source = source
        self.played.append(source)
        self._after = after
        self._playing = True
        self._paused = False

    def is_playing(self) -> bool:
        return self._playing and not self._paused

    def is_paused(self) -> bool:
        return self._paused

    def pause(self):
        self._paused = True

    def resume(self):
        self._paused = False

    def stop(self):
        self.finish()

    def finish(self, error=None):
        after, self._after = self._after, None
        self._playing = False
        self._paused = False
        if after is not None:
            after(error)

    def is_connected(self) -> bool:
        return self._connected

    async def disconnect(self, *, force: bool = False):
        self.disconnect_calls += 1
        self._connected = False
        self.finish()
        if self.guild.voice_client is self:
            self.guild.voice_client = None

    async def move_to(self, channel):
        self.channel = channel


class FakeGuild:
    def __init__(self, guild_id: int = 1, name: str = "Test Guild"):
        self.id = guild_id
        self.name = name
        self.voice_client = None


class FakeVoiceChannel:
    def __init__(self, guild: FakeGuild, name: str = "General"):
        self.guild = guild
        self.name = name
        self.connect_calls = 0

    async def connect(self, *, self_deaf: bool = False, timeout: float = 60.0, cls=None):
        self.connect_calls += 1
        client = FakeVoiceClient(self)
        self.guild.voice_client = client
        return client


class FakeTextChannel:
    def __init__(self):
        self.sent = []

    async def send(self, content=None, *, embed=None):
        self.sent.append(content if content is not None else embed)


class FakeUser:
    def __init__(self, user_id: int = 42, name: str = "listener"):
        self.id = user_id
        self.name = name
        self.mention = f"<@{user_id}>"


class FakeYouTube:
    """Resolves every query to the tracks queued in `results`, or a single track named after the query."""

    def __init__(self):
        self.results: dict[str, list[YTTrack]] = {}
        self.resolve_error: BaseException | None = None
        self.stream_error: BaseException | None = None
        self.resolve_gate: asyncio.Event | None = None
        self.resolved: list[str] = []

    async def resolve(self, query: str) -> list[YTTrack]:
        self.resolved.append(query)
        if self.resolve_gate is not None:
            await self.resolve_gate.wait()
        if self.resolve_error is not None:
            raise self.resolve_error
        if query in self.results:
            return self.results[query]
        if query == "nothing":
            raise NoMatchesError()
        video_id = (query.replace(" ", "_") + "___________")[:11]
        return [YTTrack(video_id=video_id, title=query, artist="Artist", duration_seconds=180)]

    async def get_stream_url(self, video_id: str) -> str:
        if self.stream_error is not None:
            raise self.stream_error
        return f"https://stream.test/{video_id}"


class FakeEngine(BackendAdapter):
    """Scripted adapter: records calls and emits the events a real engine would."""

    def __init__(self, state: PlaybackAggregator, name: str, remediate=None):
        super().__init__(state, remediate)
        self.name = name
        self.play_error: BaseException | None = None
        self.play_errors: list[BaseException] = []
        self.calls: list[tuple] = []
        self.current: dict[int, Track] = {}
        self.upcoming: dict[int, list[Track]] = {}
        self.paused: set[int] = set()
        self.voice: dict[int, bool] = {}

    async def play(self, voice_channel, query, requester, text_channel=None):
        self.calls.append(("play", query))
        if self.play_errors:
            raise self.play_errors.pop(0)
        if self.play_error is not None:
            raise self.play_error
        guild_id = voice_channel.guild.id
        generation = self._claim(guild_id)
        self._remember_channel(guild_id, text_channel)
        self.voice[guild_id] = True
        track = Track(title=query, duration_display="3:00", duration_seconds=180, requester_id=requester.id)
        if guild_id in self.current:
            self.upcoming.setdefault(guild_id, []).append(track)
            self._emit(EventKind.TRACK_ADDED, guild_id, generation, upcoming=tuple(self.upcoming[guild_id]))
        else:
            self.current[guild_id] = track
            self._emit(EventKind.TRACK_STARTED, guild_id, generation, track=track)

    def _require(self, guild_id):
        if guild_id not in self.current:
            raise NotPlayingError()

    async def pause(self, guild_id):
        self._require(guild_id)
        if guild_id in self.paused:
            return Outcome.ALREADY
        self.paused.add(guild_id)
        self._emit(EventKind.PAUSED, guild_id)
        return Outcome.DONE

    async def resume(self, guild_id):
        self._require(guild_id)
        if guild_id not in self.paused:
            return Outcome.ALREADY
        self.paused.discard(guild_id)
        self._emit(EventKind.RESUMED, guild_id)
        return Outcome.DONE

    async def skip(self, guild_id):
        self._require(guild_id)
        self.calls.append(("skip", guild_id))
        upcoming = self.upcoming.get(guild_id, [])
        if upcoming:
            self.current[guild_id] = upcoming.pop(0)
            self._emit(EventKind.TRACK_STARTED, guild_id, track=self.current[guild_id], upcoming=tuple(upcoming))
        else:
            self.current.pop(guild_id, None)
            self._emit(EventKind.QUEUE_FINISHED, guild_id)

    async def stop(self, guild_id):
        self.calls.append(("stop", guild_id))
        self.current.pop(guild_id, None)
        self.upcoming.pop(guild_id, None)
        self.paused.discard(guild_id)
        self._release(guild_id)

    async def set_volume(self, guild_id, volume):
        self.calls.append(("volume", volume))
        self._emit(EventKind.VOLUME_CHANGED, guild_id, volume=volume)

    async def set_loop_mode(self, guild_id, mode):
        self.calls.append(("loop", mode))
        self._emit(EventKind.LOOP_CHANGED, guild_id, loop_mode=mode)

    def _voice_connected(self, guild_id):
        return self.voice.get(guild_id)

    def get_queue_snapshot(self, guild_id):
        return QueueSnapshot(
            current=self.current.get(guild_id),
            upcoming=tuple(self.upcoming.get(guild_id, [])),
        )

    async def teardown(self, guild_id):
        self.calls.append(("teardown", guild_id))
        self.voice.pop(guild_id, None)
        self.current.pop(guild_id, None)
        self.upcoming.pop(guild_id, None)
        self.paused.discard(guild_id)
        self._emit(EventKind.DISCONNECTED, guild_id)
        self._release(guild_id)


async def settle(rounds: int = 5):
    """Let scheduled callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def state():
    aggregator = PlaybackAggregator(default_volume=50)
    aggregator.set_backend_status(BackendStatus.CONFIGURED)
    return aggregator


@pytest.fixture
def guild():
    return FakeGuild(1)


@pytest.fixture
def voice_channel(guild):
    return FakeVoiceChannel(guild)


@pytest.fixture
def text_channel():
    return FakeTextChannel()


@pytest.fixture
def user():
    return FakeUser()


@pytest.fixture
def youtube():
    return FakeYouTube()


@pytest.fixture
async def ffmpeg_adapter(state, youtube):
    adapter = FFmpegAdapter(state, youtube, source_factory=fake_source_factory)
    yield adapter
    await adapter.shutdown()


@pytest.fixture
async def radio(state):
    manager = RadioManager(state, source_factory=fake_source_factory, reconnect_timeout=0.2, restart_backoff=0.01)
    yield manager
    await manager.shutdown()
