"""
Chat Cog - /chat answers through OpenRouter
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

logger = logging.getLogger(__name__)

MAX_DESCRIPTION = 4096


class ChatCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="chat", description="Ask the AI assistant something")
    @app_commands.describe(prompt="What do you want to ask?")
    async def chat(self, interaction: discord.Interaction, prompt: str):
        if not prompt.strip():
            await interaction.response.send_message("❓ Please provide a prompt for the AI!", ephemeral=True)
            return

        # Model replies can take longer than the interaction window
        await interaction.response.defer(thinking=True)
        reply = await self.bot.openrouter.generate_reply(prompt.strip())
        if len(reply) > MAX_DESCRIPTION:
            reply = reply[:MAX_DESCRIPTION - 3] + "..."

        embed = discord.Embed(title="AI Response", description=reply, color=discord.Color(0x3498DB))
        embed.set_footer(text="Powered by OpenRouter AI")
        embed.timestamp = discord.utils.utcnow()
        await interaction.followup.send(embed=embed)


async def setup(bot: commands.Bot):
    await bot.add_cog(ChatCog(bot))
