"""
Configuration - Environment-driven settings
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    """Bot settings, read once from the environment (.env supported)."""

    # Discord
    DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")

    # Storage
    DATABASE_PATH = os.getenv("DATABASE_PATH", "data/soundgate.db")
    COOKIES_PATH = os.getenv("COOKIES_PATH", "cookies.txt")

    # Dashboard
    WEB_HOST = os.getenv("WEB_HOST", "127.0.0.1")
    WEB_PORT = _int("WEB_PORT", 3000)
    BROADCAST_INTERVAL = _int("BROADCAST_INTERVAL", 3)

    # Lavalink (primary engine)
    LAVALINK_URI = os.getenv("LAVALINK_URI", "http://localhost:2333")
    LAVALINK_PASSWORD = os.getenv("LAVALINK_PASSWORD", "youshallnotpass")

    # yt-dlp (fallback engine)
    YTDL_PO_TOKEN = os.getenv("YTDL_PO_TOKEN") or None

    # Playback
    DEFAULT_VOLUME = _int("DEFAULT_VOLUME", 50)
    IDLE_TIMEOUT = _int("IDLE_TIMEOUT", 300)

    # Spotify links (resolved to YouTube searches)
    SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID") or None
    SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET") or None

    # AI chat
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
    OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "meta-llama/llama-3-8b-instruct")

    # Radio presets: key -> (stream URL, label)
    RADIO_STATIONS = {
        "lofi": ("https://lofi.stream.laut.fm/lofi", "Lofi Radio"),
        "indonesia": ("https://radione.top:8888/dmi", "Indonesian Radio"),
    }


config = Config()
