"""
YouTube cookie store - Netscape cookie file used by yt-dlp
"""
import logging
from datetime import datetime, UTC
from pathlib import Path

logger = logging.getLogger(__name__)

HEADER = "# Netscape HTTP Cookie File"
COOKIE_EXPIRY = 1782142488

DEFAULT_COOKIES = {
    "CONSENT": "YES+cb.20210328-17-p0.id+FX+299",
    "GPS": "1",
    "PREF": "f6=40000000",
}


def cookie_line(name: str, value: str) -> str:
    return f".youtube.com\tTRUE\t/\tTRUE\t{COOKIE_EXPIRY}\t{name}\t{value}"


def parse_cookie_string(cookie_string: str) -> list[tuple[str, str]]:
    """Split a browser `name=value; name2=value2` header into pairs, skipping incomplete ones."""
    pairs = []
    for part in (cookie_string or "").split(";"):
        name, _, value = part.strip().partition("=")
        name, value = name.strip(), value.strip()
        if name and value:
            pairs.append((name, value))
    return pairs


class CookieStore:
    """Loads and rewrites the credential file handed to yt-dlp."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def ensure_default(self) -> bool:
        """Write a baseline cookie file when none exists. Returns True if one was created."""
        if self.path.exists():
            return False
        self._write(
            [cookie_line(name, value) for name, value in DEFAULT_COOKIES.items()],
            "# Default cookies for basic YouTube access, replace them with /cookies",
        )
        logger.info(f"Created default cookie file at {self.path}")
        return True

    def load(self) -> str | None:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def replace(self, cookie_string: str) -> bool:
        """Rewrite the file from a cookie header. Returns False, leaving the file alone, when nothing parses."""
        pairs = parse_cookie_string(cookie_string)
        if not pairs:
            return False
        self._write(
            [cookie_line(name, value) for name, value in pairs],
            f"# Updated on {datetime.now(UTC).isoformat()}",
        )
        logger.info(f"YouTube cookies updated ({len(pairs)} entries)")
        return True

    def _write(self, lines: list[str], comment: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join([HEADER, comment, "", *lines]) + "\n"
        self.path.write_text(content, encoding="utf-8")
