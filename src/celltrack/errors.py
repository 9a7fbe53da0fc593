"""Exception classes for the analysis pipeline."""

from __future__ import annotations

import logging


logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """Base exception for failures surfaced to the caller of a run."""

    kind = "analysis_failed"


class NoUsableFramesError(AnalysisError):
    """Raised when not a single sampled timestamp produced an image."""

    kind = "no_usable_frames"

    def __init__(self, requested: int = 0) -> None:
        super().__init__(f"No usable frames found in video ({requested} timestamps sampled)")
        self.requested = requested


class VideoOpenError(AnalysisError):
    """Raised when the video file cannot be opened for frame grabs."""

    kind = "video_unreadable"

    def __init__(self, path: str | None = None) -> None:
        msg = f"Could not open video: {path}" if path else "Could not open video"
        super().__init__(msg)
        self.path = path


class FrameUnavailableError(AnalysisError):
    """Raised by a frame source when one timestamp cannot be grabbed."""

    kind = "frame_unavailable"

    def __init__(self, timestamp: float, reason: str = "read failed") -> None:
        super().__init__(f"Frame at {timestamp:.3f}s unavailable: {reason}")
        self.timestamp = timestamp
        self.reason = reason


class VisionServiceError(RuntimeError):
    """One failed call to a chat-completions endpoint."""

    def __init__(self, message: str, *, retryable: bool, status: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class TrackerInputError(ValueError):
    """Raised when detections handed to the tracker carry invalid coordinates."""


_FRIENDLY_BY_KIND = {
    NoUsableFramesError.kind: (
        "No usable frames could be read from the video. "
        "The file may be corrupted or use an unsupported codec."
    ),
    VideoOpenError.kind: (
        "Could not open the video file. Ensure it is a valid MP4/WebM/AVI "
        "encoded with a codec OpenCV can decode (H.264 is the safest choice)."
    ),
    FrameUnavailableError.kind: "A video frame could not be read.",
}

_FRIENDLY_BY_STATUS = {
    401: "Invalid API key provided. Please check your key.",
    403: "Invalid API key provided. Please check your key.",
    429: "Too many requests. The API quota has been exceeded. Please try again in a few minutes.",
}

INVALID_CONFIG_MESSAGE = "Invalid analysis settings. Check the analysis options."
GENERIC_ERROR_MESSAGE = "An unexpected error occurred during analysis. Please try again."


def friendly_error_message(exc: BaseException) -> str:
    """Map an exception to a fixed user-facing sentence."""
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str) and kind in _FRIENDLY_BY_KIND:
        return _FRIENDLY_BY_KIND[kind]
    if isinstance(exc, VisionServiceError):
        if exc.status in _FRIENDLY_BY_STATUS:
            return _FRIENDLY_BY_STATUS[int(exc.status)]
        if exc.status is None and exc.retryable:
            return "Network error. Please check your connection to the vision service."
    if isinstance(exc, TimeoutError):
        return "The video processing timed out. Try a shorter video clip."
    if isinstance(exc, TrackerInputError):
        return "The vision service returned invalid cell coordinates."
    if isinstance(exc, ValueError):
        logger.warning("Invalid configuration: %s", exc)
        return INVALID_CONFIG_MESSAGE
    return GENERIC_ERROR_MESSAGE
