"""
Music Cog - Playback, radio and credential commands
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

from soundgate.playback.errors import (
    AuthRequiredError,
    InvalidRequestError,
    NotPlayingError,
    PlaybackError,
)
from soundgate.playback.models import LoopMode, Outcome, format_duration

logger = logging.getLogger(__name__)

LOOP_LABELS = {
    LoopMode.OFF: "Off",
    LoopMode.TRACK: "Repeat Song",
    LoopMode.QUEUE: "Repeat Queue",
}

HELP_SECTIONS = [
    ("🎵 Music", [
        ("/play <query>", "Play a song or playlist from YouTube, a Spotify track/album/playlist link, or a search"),
        ("/pause, /resume, /skip", "Control the current song"),
        ("/stop", "Stop the radio, or the music and its queue"),
        ("/queue, /nowplaying", "Show the queue or the current song"),
        ("/loop [off/track/queue]", "Set the loop mode, or cycle it"),
        ("/volume <0-100>", "Set the volume level"),
        ("/radio [station] [url]", "Play a 24/7 radio stream (lofi, Indonesian, or a custom URL)"),
        ("/cookies <cookies>", "Admin: update YouTube cookies when playback asks to sign in"),
    ]),
    ("🧠 AI", [
        ("/chat <prompt>", "Ask the AI assistant a question"),
    ]),
    ("📊 Leveling", [
        ("/level [user]", "Show your level and XP, or another member's"),
        ("/leaderboard", "Top members by XP"),
    ]),
    ("👋 Welcome", [
        ("/welcome channel <#channel>", "Set the channel for welcome messages"),
        ("/welcome message <text>", "Set the message: {user}, {username}, {server}, {membercount}"),
        ("/welcome test", "Preview the welcome message"),
    ]),
]


def build_help_embed() -> discord.Embed:
    embed = discord.Embed(
        title="🤖 Bot Commands",
        description="Here are the available commands:",
        color=discord.Color.blurple(),
    )
    for section, entries in HELP_SECTIONS:
        lines = [f"`{usage}` - {text}" for usage, text in entries]
        embed.add_field(name=section, value="\n".join(lines), inline=False)
    embed.set_footer(text="Music and radio by Soundgate")
    return embed


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def controller(self):
        return self.bot.controller

    async def _reply(self, interaction: discord.Interaction, content: str | None = None, *,
                     embed: discord.Embed | None = None, ephemeral: bool = False):
        kwargs = {"ephemeral": ephemeral}
        if content is not None:
            kwargs["content"] = content
        if embed is not None:
            kwargs["embed"] = embed
        if interaction.response.is_done():
            await interaction.followup.send(**kwargs)
        else:
            await interaction.response.send_message(**kwargs)

    @staticmethod
    def _voice_channel(interaction: discord.Interaction) -> discord.VoiceChannel | None:
        voice = getattr(interaction.user, "voice", None)
        return voice.channel if voice else None

    # ==================== QUEUE PLAYBACK ====================

    @app_commands.command(name="play", description="Play a song or playlist from a URL or search query")
    @app_commands.describe(query="Song name, YouTube/Spotify URL or playlist URL")
    async def play(self, interaction: discord.Interaction, query: str):
        voice_channel = self._voice_channel(interaction)
        if voice_channel is None:
            await self._reply(interaction, "❌ You need to be in a voice channel to play music!", ephemeral=True)
            return

        await interaction.response.defer()
        await interaction.followup.send(f"🔍 Searching for: {query}")
        try:
            backend = await self.controller.play(voice_channel, query, interaction.user, interaction.channel)
            logger.info(f"Play '{query}' in guild {interaction.guild_id} handled by {backend}")
        except AuthRequiredError as e:
            await self._send_auth_help(interaction, query, e)
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}")

    async def _send_auth_help(self, interaction: discord.Interaction, query: str, error: AuthRequiredError):
        """Explain the bot check, with whatever metadata is still reachable for the video."""
        youtube = self.bot.youtube
        parsed = youtube.parse_url(query)
        embed = discord.Embed(
            title="YouTube Authentication Error",
            description=error.message,
            color=discord.Color.red(),
        )
        embed.add_field(name="Solution", value="Use the `/cookies` command to update YouTube cookies", inline=False)

        if parsed and parsed[0] == "video":
            info = await youtube.get_track_info(parsed[1])
            if info:
                embed.add_field(name="Video", value=f"**{info.title}**\nby {info.artist}", inline=False)
                embed.add_field(name="Duration", value=format_duration(info.duration_seconds), inline=True)
                if info.thumbnail_url:
                    embed.set_thumbnail(url=info.thumbnail_url)
        await self._reply(interaction, embed=embed)

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause(self, interaction: discord.Interaction):
        try:
            outcome = await self.controller.pause(interaction.guild_id)
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}", ephemeral=True)
            return
        if outcome is Outcome.ALREADY:
            await self._reply(interaction, "⚠️ The music is already paused!", ephemeral=True)
        else:
            await self._reply(interaction, "⏸️ Music paused!")

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume(self, interaction: discord.Interaction):
        try:
            outcome = await self.controller.resume(interaction.guild_id)
        except NotPlayingError:
            await self._reply(interaction, "❌ There is nothing to resume!", ephemeral=True)
            return
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}", ephemeral=True)
            return
        if outcome is Outcome.ALREADY:
            await self._reply(interaction, "⚠️ The music is already playing!", ephemeral=True)
        else:
            await self._reply(interaction, "▶️ Music resumed!")

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        try:
            await self.controller.skip(interaction.guild_id)
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}", ephemeral=True)
            return
        await self._reply(interaction, "⏭️ Skipped to the next song!")

    @app_commands.command(name="stop", description="Stop the radio, or the music queue")
    async def stop(self, interaction: discord.Interaction):
        guild_id = interaction.guild_id
        try:
            if self.controller.radio.has_session(guild_id):
                await self.controller.radio.stop(guild_id)
                embed = discord.Embed(
                    title="📻 Radio Stopped",
                    description="The radio has been stopped.",
                    color=discord.Color.blue(),
                )
                await self._reply(interaction, embed=embed)
                return
            await self.controller.stop(guild_id)
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}", ephemeral=True)
            return
        await self._reply(interaction, "⏹️ Music stopped!")

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        snapshot = self.controller.queue(interaction.guild_id)
        if snapshot.current is None:
            await self._reply(interaction, "❌ There is nothing playing!", ephemeral=True)
            return

        def requester(track):
            return f"<@{track.requester_id}>" if track.requester_id else "Unknown"

        lines = [f"Playing: {snapshot.current.title} - `{snapshot.current.duration_display}` - Requested by {requester(snapshot.current)}"]
        for i, track in enumerate(snapshot.upcoming[:15], 1):
            lines.append(f"{i}. {track.title} - `{track.duration_display}` - Requested by {requester(track)}")
        if len(snapshot.upcoming) > 15:
            lines.append(f"...and {len(snapshot.upcoming) - 15} more")

        await self._reply(
            interaction,
            "📋 **Current Queue**\n" + "\n".join(lines),
            ephemeral=True,
        )

    @app_commands.command(name="nowplaying", description="Show the current song")
    async def nowplaying(self, interaction: discord.Interaction):
        state = self.bot.playback_state.get(interaction.guild_id)
        track = state.current_track
        if track is None:
            await self._reply(interaction, "❌ There is nothing playing!", ephemeral=True)
            return

        embed = discord.Embed(
            title="🎵 Now Playing",
            description=f"**{track.title}**\nby {track.author}",
            color=discord.Color.green(),
            url=track.source_url,
        )
        embed.add_field(name="Duration", value=track.duration_display, inline=True)
        embed.add_field(name="Volume", value=f"{state.volume}%", inline=True)
        embed.add_field(name="Loop", value=LOOP_LABELS[state.loop_mode], inline=True)
        if track.thumbnail_url:
            embed.set_thumbnail(url=track.thumbnail_url)
        if track.requester_id:
            user = self.bot.get_user(track.requester_id)
            if user:
                embed.set_footer(text=f"Requested by {user.display_name}")
        await self._reply(interaction, embed=embed, ephemeral=True)

    @app_commands.command(name="loop", description="Set the loop mode, or cycle it when no mode is given")
    @app_commands.describe(mode="off, track or queue")
    @app_commands.choices(mode=[
        app_commands.Choice(name="Off", value="off"),
        app_commands.Choice(name="Track", value="track"),
        app_commands.Choice(name="Queue", value="queue"),
    ])
    async def loop(self, interaction: discord.Interaction, mode: app_commands.Choice[str] | None = None):
        try:
            applied = await self.controller.set_loop_mode(interaction.guild_id, mode.value if mode else None)
        except PlaybackError as e:
            await self._reply(interaction, f"❌ {e.message}", ephemeral=True)
            return
        await self._reply(interaction, f"🔄 Loop mode set to: **{LOOP_LABELS[applied]}**")

    @app_commands.command(name="volume", description="Set the playback volume")
    @app_commands.describe(level="Volume between 0 and 100")
    async def volume(self, interaction: discord.Interaction, level: int):
        try:
            applied = await self.controller.set_volume(interaction.guild_id, level)
        except PlaybackError as e:
            icon = "⚠️" if isinstance(e, InvalidRequestError) else "❌"
            await self._reply(interaction, f"{icon} {e.message}", ephemeral=True)
            return
        await self._reply(interaction, f"🔊 Volume set to: **{applied}%**")

    # ==================== RADIO ====================

    @app_commands.command(name="radio", description="Play a 24/7 radio stream")
    @app_commands.describe(station="Preset station", url="Custom stream URL (overrides the preset)")
    @app_commands.choices(station=[
        app_commands.Choice(name="Lofi", value="lofi"),
        app_commands.Choice(name="Indonesian Radio", value="indonesia"),
    ])
    async def radio(self, interaction: discord.Interaction,
                    station: app_commands.Choice[str] | None = None, url: str | None = None):
        from soundgate.config import config

        voice_channel = self._voice_channel(interaction)
        if voice_channel is None:
            await self._reply(interaction, "❌ You need to be in a voice channel to play radio!", ephemeral=True)
            return

        if url:
            stream_url, label = url.strip(), "Custom Radio"
        else:
            stream_url, label = config.RADIO_STATIONS[station.value if station else "lofi"]

        await interaction.response.defer()
        try:
            replaced = await self.controller.radio.start(interaction.guild, voice_channel, stream_url, label)
        except PlaybackError as e:
            logger.error(f"Radio failed in guild {interaction.guild_id}: {e}")
            await self._reply(interaction, "❌ An error occurred while trying to play the radio.")
            return

        embed = discord.Embed(
            title=f"📻 Radio {'Changed' if replaced else 'Started'}: {label}",
            description=f"Now playing {label} in {voice_channel.name}",
            color=discord.Color.blue(),
        )
        embed.set_footer(text="Use /stop to stop the radio")
        embed.timestamp = discord.utils.utcnow()
        await self._reply(interaction, embed=embed)

    # ==================== CREDENTIALS ====================

    @app_commands.command(name="cookies", description="Update the YouTube cookies used for playback")
    @app_commands.describe(cookies="Cookie header copied from a logged-in browser: name=value; name2=value2")
    @app_commands.default_permissions(administrator=True)
    async def cookies(self, interaction: discord.Interaction, cookies: str):
        try:
            updated = self.bot.cookies.replace(cookies)
            if updated:
                await self.bot.reload_credentials()
        except OSError as e:
            logger.error(f"Failed to write cookie file: {e}")
            updated = False

        if updated:
            await self._reply(interaction, "✅ YouTube cookies updated successfully! Try playing music again.", ephemeral=True)
        else:
            await self._reply(
                interaction,
                "❌ Failed to update YouTube cookies. Please make sure you provided valid cookies.",
                ephemeral=True,
            )

    # ==================== HELP ====================

    @app_commands.command(name="help", description="List the bot's commands")
    async def help(self, interaction: discord.Interaction):
        await self._reply(interaction, embed=build_help_embed(), ephemeral=True)

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Forward the bot's own disconnects to the playback core."""
        if member.id != self.bot.user.id:
            return
        if before.channel is not None and after.channel is None:
            logger.info(f"Voice connection lost in guild {member.guild.id}")
            try:
                await self.controller.handle_voice_disconnect(member.guild.id)
            except Exception as e:
                logger.error(f"Failed to handle voice disconnect in guild {member.guild.id}: {e}")


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
