"""
Soundgate Discord Bot - Main Entry Point
"""
import asyncio
import logging
import os
from datetime import datetime, UTC
from pathlib import Path

import discord
from discord.ext import commands

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("wavelink").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


class SoundgateBot(commands.Bot):
    """Music, radio, leveling and chat bot with a live web dashboard."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.voice_states = True
        intents.guilds = True
        intents.members = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.db = None
        self.controller = None
        self.playback_state = None
        self.start_time = datetime.now(UTC)

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from soundgate.config import config
        from soundgate.database.connection import DatabaseManager

        self.db = await DatabaseManager.create(config.DATABASE_PATH)
        logger.info(f"Database initialized at {config.DATABASE_PATH}")

        # Services
        from soundgate.services.cookies import CookieStore
        from soundgate.services.ffmpeg import detect_ffmpeg
        from soundgate.services.openrouter import OpenRouterService
        from soundgate.services.spotify import SpotifyService
        from soundgate.services.youtube import YouTubeService

        self.cookies = CookieStore(config.COOKIES_PATH)
        self.cookies.ensure_default()
        self.spotify = SpotifyService(config.SPOTIFY_CLIENT_ID, config.SPOTIFY_CLIENT_SECRET)
        self.youtube = YouTubeService(config.COOKIES_PATH, config.YTDL_PO_TOKEN, spotify=self.spotify)
        self.openrouter = OpenRouterService(config.OPENROUTER_API_KEY, config.OPENROUTER_MODEL)

        # Playback core
        from soundgate.playback.adapters.ffmpeg import FFmpegAdapter
        from soundgate.playback.adapters.lavalink import LavalinkAdapter
        from soundgate.playback.controller import PlaybackController
        from soundgate.playback.radio import RadioManager
        from soundgate.playback.state import PlaybackAggregator

        self.playback_state = PlaybackAggregator(default_volume=config.DEFAULT_VOLUME)
        self.playback_state.set_backend_status(detect_ffmpeg())

        lavalink = LavalinkAdapter(
            self.playback_state, self, config.LAVALINK_URI, config.LAVALINK_PASSWORD,
            remediate=self.reload_credentials, spotify=self.spotify,
        )
        await lavalink.connect()

        local = FFmpegAdapter(
            self.playback_state, self.youtube,
            remediate=self.reload_credentials, idle_timeout=config.IDLE_TIMEOUT,
        )
        await local.start()

        self.controller = PlaybackController(
            self.playback_state,
            [lavalink, local],
            RadioManager(self.playback_state),
            remediate=self.reload_credentials,
        )
        logger.info("Services initialized")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        if cogs_dir.exists():
            for cog_file in cogs_dir.glob("*.py"):
                if cog_file.name.startswith("_"):
                    continue
                cog_name = f"soundgate.cogs.{cog_file.stem}"
                try:
                    await self.load_extension(cog_name)
                    logger.info(f"Loaded cog: {cog_name}")
                except Exception as e:
                    logger.error(f"Failed to load cog {cog_name}: {e}")

        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def reload_credentials(self) -> bool:
        """One-shot remediation for YouTube bot checks: re-read the cookie file."""
        return await asyncio.to_thread(self.youtube.reload_cookies)

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(
            type=discord.ActivityType.listening,
            name="/play"
        )
        await self.change_presence(activity=activity)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        """Called when the bot is removed from a guild."""
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")
        if self.controller:
            await self.controller.forget_guild(guild.id)

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        if self.controller:
            try:
                await self.controller.shutdown()
            except Exception as e:
                logger.error(f"Playback shutdown failed: {e}")

        # Unload the dashboard to close its websockets
        try:
            await self.unload_extension("soundgate.cogs.dashboard")
        except commands.ExtensionError:
            pass

        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.debug(f"Voice disconnect during shutdown failed: {e}")

        if getattr(self, "youtube", None):
            await self.youtube.shutdown()

        if self.db:
            try:
                await self.db.close()
            except Exception as e:
                logger.error(f"Failed to close database: {e}")

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    from soundgate.config import config

    bot = SoundgateBot()

    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except Exception as e:
            logger.error(f"Bot error: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
