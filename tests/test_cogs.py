from types import SimpleNamespace

from soundgate.cogs.leveling import progress
from soundgate.cogs.music import build_help_embed
from soundgate.cogs.welcome import render_welcome


def test_render_welcome_placeholders():
    member = SimpleNamespace(
        id=42,
        name="newbie",
        guild=SimpleNamespace(name="Cafe", member_count=128),
    )
    text = render_welcome("Hi {user} ({username})! {server} now has {membercount} members. {user}", member)
    assert text == "Hi <@42> (newbie)! Cafe now has 128 members. <@42>"


def test_progress_bar():
    next_xp, percent, bar = progress(150, 1)
    assert next_xp == 400
    assert percent == 37
    assert bar == "█" * 7 + "░" * 13


def test_progress_bar_caps_at_full():
    next_xp, percent, bar = progress(10_000, 0)
    assert next_xp == 100
    assert percent == 100
    assert bar == "█" * 20


def test_help_lists_every_command():
    embed = build_help_embed()
    listed = " ".join(field.value for field in embed.fields)
    for command in ("/play", "/pause", "/resume", "/skip", "/stop", "/queue", "/nowplaying", "/loop",
                    "/volume", "/radio", "/cookies", "/chat", "/level", "/leaderboard", "/welcome test"):
        assert command in listed
    assert "Spotify" in listed
