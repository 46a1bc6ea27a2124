"""
Welcome Cog - Greets new members with a per-server message
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

from soundgate.database.crud import GuildSettingsCRUD

logger = logging.getLogger(__name__)

WELCOME_COLOR = discord.Color(0x3498DB)


def render_welcome(template: str, member: discord.Member) -> str:
    """Substitute the {user}, {username}, {server} and {membercount} placeholders."""
    return (
        template
        .replace("{user}", f"<@{member.id}>")
        .replace("{username}", member.name)
        .replace("{server}", member.guild.name)
        .replace("{membercount}", str(member.guild.member_count))
    )


def build_welcome_embed(template: str, member: discord.Member) -> discord.Embed:
    embed = discord.Embed(
        title=f"Welcome to {member.guild.name}!",
        description=render_welcome(template, member),
        color=WELCOME_COLOR,
    )
    embed.set_thumbnail(url=member.display_avatar.url)
    embed.set_footer(text=f"Member #{member.guild.member_count}")
    embed.timestamp = discord.utils.utcnow()
    return embed


class WelcomeCog(commands.Cog):
    """Welcome channel configuration and join greetings."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def settings(self) -> GuildSettingsCRUD:
        return GuildSettingsCRUD(self.bot.db)

    welcome_group = app_commands.Group(
        name="welcome",
        description="Welcome message settings",
        default_permissions=discord.Permissions(manage_guild=True)
    )

    @welcome_group.command(name="channel", description="Set the channel for welcome messages")
    @app_commands.describe(channel="Channel that receives welcome messages")
    async def channel(self, interaction: discord.Interaction, channel: discord.TextChannel):
        try:
            await self.settings.set_welcome_channel(interaction.guild_id, channel.id)
        except Exception as e:
            logger.error(f"Welcome channel error in guild {interaction.guild_id}: {e}")
            await interaction.response.send_message(
                "❌ An error occurred while setting the welcome channel.", ephemeral=True
            )
            return
        await interaction.response.send_message(f"✅ Welcome channel set to {channel.mention}")

    @welcome_group.command(name="message", description="Set the welcome message")
    @app_commands.describe(message="Placeholders: {user}, {username}, {server}, {membercount}")
    async def message(self, interaction: discord.Interaction, message: str):
        message = message.strip()
        if not message:
            await interaction.response.send_message(
                "❓ Please provide a welcome message. You can use `{user}`, `{username}`, `{server}`, "
                "and `{membercount}` as placeholders.",
                ephemeral=True,
            )
            return
        try:
            await self.settings.set_welcome_message(interaction.guild_id, message)
        except Exception as e:
            logger.error(f"Welcome message error in guild {interaction.guild_id}: {e}")
            await interaction.response.send_message(
                "❌ An error occurred while setting the welcome message.", ephemeral=True
            )
            return
        await interaction.response.send_message(f"✅ Welcome message set to: {message}")

    @welcome_group.command(name="test", description="Send a test welcome message for yourself")
    async def test(self, interaction: discord.Interaction):
        settings = await self.settings.get_or_create(interaction.guild_id)
        if not settings["welcome_channel_id"]:
            await interaction.response.send_message(
                "❌ Welcome channel not set. Use `/welcome channel` first.", ephemeral=True
            )
            return

        channel = interaction.guild.get_channel(settings["welcome_channel_id"])
        if channel is None:
            await interaction.response.send_message(
                "❌ Welcome channel not found. It may have been deleted.", ephemeral=True
            )
            return

        try:
            await channel.send(embed=build_welcome_embed(settings["welcome_message"], interaction.user))
        except discord.HTTPException as e:
            logger.error(f"Welcome test failed in guild {interaction.guild_id}: {e}")
            await interaction.response.send_message(
                "❌ An error occurred while testing the welcome message.", ephemeral=True
            )
            return
        await interaction.response.send_message(f"✅ Test welcome message sent to {channel.mention}")

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        try:
            settings = await self.settings.get_or_create(member.guild.id)
            if not settings["welcome_channel_id"]:
                return
            channel = member.guild.get_channel(settings["welcome_channel_id"])
            if channel is None:
                return
            await channel.send(embed=build_welcome_embed(settings["welcome_message"], member))
        except Exception as e:
            logger.error(f"Error sending welcome message in guild {member.guild.id}: {e}")


async def setup(bot: commands.Bot):
    await bot.add_cog(WelcomeCog(bot))
