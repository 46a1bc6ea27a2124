"""
Playback Errors - Error taxonomy, classification and one-shot remediation
"""
import asyncio
import logging
import time
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    USER_INPUT = "user_input"
    NOT_FOUND = "not_found"
    AUTH_REQUIRED = "auth_required"
    TRANSIENT_NETWORK = "transient_network"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


class PlaybackError(Exception):
    """Base for every failure the playback core reports to users."""

    kind = ErrorKind.UNKNOWN
    default_message = "Something went wrong while handling playback."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequestError(PlaybackError):
    kind = ErrorKind.USER_INPUT
    default_message = "Invalid request."


class NotPlayingError(PlaybackError):
    kind = ErrorKind.USER_INPUT
    default_message = "There is nothing playing!"


class NoMatchesError(PlaybackError):
    kind = ErrorKind.NOT_FOUND
    default_message = "No result found!"


class AuthRequiredError(PlaybackError):
    kind = ErrorKind.AUTH_REQUIRED
    default_message = "YouTube is asking for verification. Update the cookies with /cookies and try again."


class TransientNetworkError(PlaybackError):
    kind = ErrorKind.TRANSIENT_NETWORK
    default_message = "A network error interrupted playback. Please try again."


class BackendUnavailableError(PlaybackError):
    kind = ErrorKind.BACKEND_UNAVAILABLE
    default_message = "The audio backend is not available."


class SessionConflictError(PlaybackError):
    kind = ErrorKind.CONFLICT
    default_message = "Another player already owns this server's session."


_AUTH_MARKERS = (
    "sign in to confirm you're not a bot",
    "sign in to confirm you’re not a bot",
    "confirm you're not a bot",
    "login required",
    "use --cookies",
    "ytdlp_error",
)
_NOT_FOUND_MARKERS = (
    "no result",
    "no matches",
    "video unavailable",
    "private video",
    "not found",
    "unsupported url",
)
_NETWORK_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "temporary failure",
    "network is unreachable",
    "http error 5",
)


def classify(exc: BaseException) -> ErrorKind:
    """Map any engine/library exception onto the error taxonomy."""
    if isinstance(exc, PlaybackError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT_NETWORK

    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH_REQUIRED
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    if any(marker in text for marker in _NETWORK_MARKERS):
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.UNKNOWN


_KIND_TO_ERROR = {
    ErrorKind.NOT_FOUND: NoMatchesError,
    ErrorKind.AUTH_REQUIRED: AuthRequiredError,
    ErrorKind.TRANSIENT_NETWORK: TransientNetworkError,
    ErrorKind.BACKEND_UNAVAILABLE: BackendUnavailableError,
    ErrorKind.CONFLICT: SessionConflictError,
    ErrorKind.USER_INPUT: InvalidRequestError,
}


def as_playback_error(exc: BaseException) -> PlaybackError:
    """Wrap an arbitrary exception into the matching PlaybackError subclass."""
    if isinstance(exc, PlaybackError):
        return exc
    error_cls = _KIND_TO_ERROR.get(classify(exc), PlaybackError)
    if error_cls is NoMatchesError:
        return error_cls()
    if error_cls is PlaybackError:
        return PlaybackError(f"Error: {exc}")
    return error_cls()


class RemediationGuard:
    """Allows a remediation action at most once per key inside a time window."""

    def __init__(self, window: float = 300.0, clock=time.monotonic):
        self.window = window
        self._clock = clock
        self._last_attempt: dict[object, float] = {}

    def allow(self, key: object) -> bool:
        now = self._clock()
        last = self._last_attempt.get(key)
        if last is not None and now - last < self.window:
            logger.info(f"Remediation for {key} already attempted {now - last:.0f}s ago, skipping")
            return False
        self._last_attempt[key] = now
        return True

    def reset(self, key: object) -> None:
        self._last_attempt.pop(key, None)
