"""
CRUD helpers - Leveling and guild settings
"""
import logging
import math
import time

from soundgate.database.connection import DatabaseManager

logger = logging.getLogger(__name__)

XP_PER_MESSAGE = 5
XP_COOLDOWN_SECONDS = 60
DEFAULT_WELCOME_MESSAGE = "Welcome to the server, {user}!"


def level_for_xp(xp: int) -> int:
    return math.floor(math.sqrt(xp / 100))


def xp_for_level(level: int) -> int:
    """Total XP needed to reach `level`."""
    return level * level * 100


class LevelCRUD:
    """Message XP records keyed by (user_id, guild_id)."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, user_id: int, guild_id: int) -> dict | None:
        return await self.db.fetch_one(
            "SELECT user_id, guild_id, xp, level, last_message_at FROM user_levels WHERE user_id = ? AND guild_id = ?",
            (user_id, guild_id),
        )

    async def add_xp(
        self,
        user_id: int,
        guild_id: int,
        amount: int = XP_PER_MESSAGE,
        now: float | None = None,
    ) -> int | None:
        """
        Award XP for a message unless the member is still on cooldown.
        Returns the new level when this award crossed a level boundary.
        """
        now = time.time() if now is None else now
        await self.db.execute(
            "INSERT INTO user_levels (user_id, guild_id) VALUES (?, ?) ON CONFLICT(user_id, guild_id) DO NOTHING",
            (user_id, guild_id),
        )
        record = await self.get(user_id, guild_id)

        if record["last_message_at"] and now - record["last_message_at"] < XP_COOLDOWN_SECONDS:
            return None

        xp = record["xp"] + amount
        level = level_for_xp(xp)
        await self.db.execute(
            "UPDATE user_levels SET xp = ?, level = ?, last_message_at = ? WHERE user_id = ? AND guild_id = ?",
            (xp, level, now, user_id, guild_id),
        )

        if level > record["level"]:
            logger.info(f"User {user_id} reached level {level} in guild {guild_id}")
            return level
        return None

    async def get_leaderboard(self, guild_id: int, limit: int = 10) -> list[dict]:
        return await self.db.fetch_all(
            "SELECT user_id, xp, level FROM user_levels WHERE guild_id = ? ORDER BY xp DESC LIMIT ?",
            (guild_id, limit),
        )


class GuildSettingsCRUD:
    """Per-guild welcome channel and message template."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get_or_create(self, guild_id: int) -> dict:
        await self.db.execute(
            "INSERT INTO guild_settings (guild_id) VALUES (?) ON CONFLICT(guild_id) DO NOTHING",
            (guild_id,),
        )
        settings = await self.db.fetch_one(
            "SELECT guild_id, welcome_channel_id, welcome_message FROM guild_settings WHERE guild_id = ?",
            (guild_id,),
        )
        if not settings["welcome_message"]:
            settings["welcome_message"] = DEFAULT_WELCOME_MESSAGE
        return settings

    async def set_welcome_channel(self, guild_id: int, channel_id: int | None) -> None:
        await self.get_or_create(guild_id)
        await self.db.execute(
            "UPDATE guild_settings SET welcome_channel_id = ? WHERE guild_id = ?",
            (channel_id, guild_id),
        )

    async def set_welcome_message(self, guild_id: int, message: str) -> None:
        await self.get_or_create(guild_id)
        await self.db.execute(
            "UPDATE guild_settings SET welcome_message = ? WHERE guild_id = ?",
            (message, guild_id),
        )
