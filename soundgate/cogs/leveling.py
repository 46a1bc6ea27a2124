"""
Leveling Cog - Message XP, level-up announcements and /level
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

from soundgate.database.crud import LevelCRUD, xp_for_level

logger = logging.getLogger(__name__)

LEVEL_COLOR = discord.Color(0x3498DB)
BAR_LENGTH = 20


def progress(xp: int, level: int) -> tuple[int, int, str]:
    """Returns (next level XP, percent, bar) toward the next level."""
    next_xp = xp_for_level(level + 1)
    percent = min(100, (xp * 100) // next_xp)
    filled = (percent * BAR_LENGTH) // 100
    return next_xp, percent, "█" * filled + "░" * (BAR_LENGTH - filled)


class LevelingCog(commands.Cog):
    """Awards XP for chat activity."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def levels(self) -> LevelCRUD:
        return LevelCRUD(self.bot.db)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        if message.author.bot or message.guild is None:
            return

        try:
            new_level = await self.levels.add_xp(message.author.id, message.guild.id)
        except Exception as e:
            logger.error(f"Failed to award XP to {message.author.id}: {e}")
            return
        if new_level is None:
            return

        embed = discord.Embed(
            title="Level Up!",
            description=f"Congratulations {message.author.mention}! You've reached level **{new_level}**!",
            color=LEVEL_COLOR,
        )
        embed.set_thumbnail(url=message.author.display_avatar.url)
        embed.timestamp = discord.utils.utcnow()
        try:
            await message.channel.send(embed=embed)
        except discord.HTTPException as e:
            logger.warning(f"Could not announce level up in {message.channel.id}: {e}")

    @app_commands.command(name="level", description="Show your level, or another member's")
    @app_commands.describe(user="Member to look up")
    async def level(self, interaction: discord.Interaction, user: discord.Member | None = None):
        target = user or interaction.user
        record = await self.levels.get(target.id, interaction.guild_id)
        if record is None:
            await interaction.response.send_message(f"{target.name} hasn't earned any XP yet!")
            return

        next_xp, percent, bar = progress(record["xp"], record["level"])
        embed = discord.Embed(title=f"{target.name}'s Level", color=LEVEL_COLOR)
        embed.set_thumbnail(url=target.display_avatar.url)
        embed.add_field(name="Level", value=str(record["level"]), inline=True)
        embed.add_field(name="XP", value=f"{record['xp']}/{next_xp}", inline=True)
        embed.add_field(name="Progress", value=f"{bar} {percent}%", inline=False)
        embed.set_footer(text=f"Requested by {interaction.user.name}")
        embed.timestamp = discord.utils.utcnow()
        await interaction.response.send_message(embed=embed)

    @app_commands.command(name="leaderboard", description="Top members by XP")
    async def leaderboard(self, interaction: discord.Interaction):
        rows = await self.levels.get_leaderboard(interaction.guild_id)
        if not rows:
            await interaction.response.send_message("Nobody has earned any XP yet!", ephemeral=True)
            return

        lines = [
            f"**{i}.** <@{row['user_id']}> - Level {row['level']} ({row['xp']} XP)"
            for i, row in enumerate(rows, 1)
        ]
        embed = discord.Embed(title="🏆 Leaderboard", description="\n".join(lines), color=LEVEL_COLOR)
        await interaction.response.send_message(embed=embed)


async def setup(bot: commands.Bot):
    await bot.add_cog(LevelingCog(bot))
