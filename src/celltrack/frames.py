from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
import math
from pathlib import Path
from typing import Any

import numpy as np

from .errors import FrameUnavailableError, VideoOpenError
from .sampling import SamplingConfig
from .types import VideoHandle


def _ensure_cv2() -> Any:
    try:
        import cv2  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "opencv-python-headless is required for frame extraction. "
            "Install with: pip install -e ."
        ) from exc
    return cv2


def fit_within(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Scale (width, height) down so neither side exceeds max_dimension."""
    if width <= 0 or height <= 0:
        return width, height
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = min(max_dimension / width, max_dimension / height)
    return max(1, int(width * scale)), max(1, int(height * scale))


def encode_jpeg(frame: np.ndarray, *, max_dimension: int, quality: int) -> bytes:
    cv2 = _ensure_cv2()
    height, width = frame.shape[:2]
    new_w, new_h = fit_within(int(width), int(height), max_dimension)
    if (new_w, new_h) != (width, height):
        frame = cv2.resize(frame, (new_w, new_h), interpolation=cv2.INTER_AREA)
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise RuntimeError("JPEG encoding failed")
    return buffer.tobytes()


class FrameSource(ABC):
    video: VideoHandle

    @abstractmethod
    def get_frame_image(self, timestamp: float) -> bytes:
        """Return a JPEG for `timestamp` or raise FrameUnavailableError."""
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class OpenCVFrameSource(FrameSource):
    """
    Frame grabs through cv2.VideoCapture.
    Each grab runs on a single worker thread so a stalled seek can be skipped
    after `frame_timeout_sec` instead of blocking the run.
    """

    def __init__(self, video_path: str | Path, config: SamplingConfig | None = None) -> None:
        self.config = config or SamplingConfig()
        self.config.validate()
        path = Path(video_path)
        if not path.exists():
            raise FileNotFoundError(f"Video not found: {path}")
        cv2 = _ensure_cv2()
        self._cap = cv2.VideoCapture(str(path))
        if not self._cap.isOpened():
            raise VideoOpenError(str(path))

        fps = float(self._cap.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        duration = (frame_count / fps) if (fps > 0 and frame_count > 0) else math.nan
        self.video = VideoHandle(
            duration_sec=duration,
            width=int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
            height=int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
            fps=fps,
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame-grab")
        self._stalled = False
        self._pending: Future[Any] | None = None

    def _grab(self, timestamp: float) -> np.ndarray | None:
        cv2 = _ensure_cv2()
        self._cap.set(cv2.CAP_PROP_POS_MSEC, float(timestamp) * 1000.0)
        ok, frame = self._cap.read()
        return frame if ok else None

    def get_frame_image(self, timestamp: float) -> bytes:
        if self._stalled:
            raise FrameUnavailableError(timestamp, "capture still busy with a previous seek")
        future = self._executor.submit(self._grab, timestamp)
        self._pending = future
        try:
            frame = future.result(timeout=self.config.frame_timeout_sec)
        except FutureTimeoutError as exc:
            self._stalled = True
            future.add_done_callback(self._clear_stall)
            raise FrameUnavailableError(timestamp, "seek timed out") from exc
        if frame is None:
            raise FrameUnavailableError(timestamp)
        return encode_jpeg(
            frame,
            max_dimension=self.config.max_dimension,
            quality=self.config.jpeg_quality,
        )

    def _clear_stall(self, _future: Any) -> None:
        self._stalled = False

    def _release(self, _future: Any = None) -> None:
        self._cap.release()

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        if self._pending is None:
            self._release()
        else:
            # A stalled grab may still be inside cap.read(); release after it returns.
            self._pending.add_done_callback(self._release)
