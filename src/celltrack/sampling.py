from __future__ import annotations

from dataclasses import dataclass
import math


@dataclass(slots=True)
class SamplingConfig:
    min_interval_sec: float = 1.0
    max_frames: int = 30
    fallback_duration_sec: float = 30.0
    frame_timeout_sec: float = 3.0
    max_dimension: int = 1024
    jpeg_quality: int = 60

    def validate(self) -> None:
        if not math.isfinite(self.min_interval_sec) or self.min_interval_sec <= 0:
            raise ValueError("min_interval_sec must be > 0")
        if self.max_frames <= 0:
            raise ValueError("max_frames must be > 0")
        if not math.isfinite(self.fallback_duration_sec) or self.fallback_duration_sec < 0:
            raise ValueError("fallback_duration_sec must be >= 0")
        if self.frame_timeout_sec <= 0:
            raise ValueError("frame_timeout_sec must be > 0")
        if self.max_dimension <= 0:
            raise ValueError("max_dimension must be > 0")
        if self.jpeg_quality < 1 or self.jpeg_quality > 100:
            raise ValueError("jpeg_quality must be in [1, 100]")


def resolve_duration(duration: float | None, config: SamplingConfig) -> float:
    """Substitute the configured fallback for an unknown or non-finite duration."""
    if duration is None:
        return float(config.fallback_duration_sec)
    value = float(duration)
    if not math.isfinite(value):
        return float(config.fallback_duration_sec)
    return value


def sample_timestamps(duration: float, min_interval: float, max_frames: int) -> list[float]:
    """
    Spread at most `max_frames` sample times over [0, duration).

    Short videos are sampled every `min_interval` seconds; long videos get a
    wider interval so the frame budget still covers the whole timeline.
    """
    if min_interval <= 0:
        raise ValueError("min_interval must be > 0")
    if max_frames <= 0:
        raise ValueError("max_frames must be > 0")
    if not duration > 0:
        return [0.0]

    interval = max(float(min_interval), float(duration) / max_frames)
    out = [0.0]
    step = 1
    while len(out) < max_frames:
        t = step * interval
        if t >= duration:
            break
        out.append(t)
        step += 1
    return out


def sample_for_config(duration: float | None, config: SamplingConfig) -> list[float]:
    config.validate()
    return sample_timestamps(
        resolve_duration(duration, config),
        config.min_interval_sec,
        config.max_frames,
    )
