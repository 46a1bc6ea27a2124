"""
FFmpeg detection - checked once at startup, surfaced when a local play is attempted
"""
import logging
import shutil

from soundgate.playback.models import BackendStatus

logger = logging.getLogger(__name__)


def detect_ffmpeg(executable: str = "ffmpeg") -> BackendStatus:
    path = shutil.which(executable)
    if path is None:
        logger.warning("FFmpeg not found on PATH, local playback and radio are disabled")
        return BackendStatus.MISSING
    logger.info(f"FFmpeg found at {path}")
    return BackendStatus.CONFIGURED
