from __future__ import annotations

from functools import partial
import logging
from pathlib import Path
import sys
from typing import Callable

from .errors import FrameUnavailableError, NoUsableFramesError
from .frames import FrameSource, OpenCVFrameSource
from .inference import VisionConfig, analyze_frame
from .report import ReportConfig, build_summary, compute_statistics, generate_report
from .sampling import SamplingConfig, sample_for_config
from .tracking import TrackerConfig, link_cells
from .types import AnalysisResult, FrameDetections, RunStatistics


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]
FrameAnalyzer = Callable[[bytes, float], FrameDetections]
ReportWriter = Callable[[RunStatistics], str]

SETUP_PERCENT = 5.0
EXTRACTED_PERCENT = 15.0
INFERENCE_END_PERCENT = 80.0
TRACKING_PERCENT = 85.0
REPORT_PERCENT = 90.0
FINALIZE_PERCENT = 98.0


def _log_progress(enabled: bool, message: str) -> None:
    if not enabled:
        return
    print(f"[celltrack] {message}", file=sys.stderr, flush=True)


class ProgressReporter:
    """Forwards progress to an observer, never letting the percentage go backwards."""

    def __init__(self, callback: ProgressCallback | None = None, *, log_progress: bool = False) -> None:
        self._callback = callback
        self._log = log_progress
        self.percent = 0.0

    def __call__(self, percent: float, message: str) -> None:
        self.percent = min(100.0, max(self.percent, float(percent)))
        _log_progress(self._log, f"{self.percent:5.1f}% {message}")
        if self._callback is not None:
            self._callback(self.percent, message)


def _span(start: float, end: float, index: int, total: int) -> float:
    if total <= 0:
        return start
    return start + round(index / total * (end - start))


def extract_frames(
    source: FrameSource,
    timestamps: list[float],
    progress: ProgressReporter,
) -> list[tuple[float, bytes]]:
    out: list[tuple[float, bytes]] = []
    total = len(timestamps)
    for idx, timestamp in enumerate(timestamps):
        progress(_span(SETUP_PERCENT, EXTRACTED_PERCENT, idx, total), f"Extracting frame at {timestamp:.1f}s...")
        try:
            image = source.get_frame_image(timestamp)
        except FrameUnavailableError as exc:
            logger.warning("Skipping timestamp %.2fs: %s", timestamp, exc)
            continue
        out.append((timestamp, image))
    return out


def run_analysis(
    source: FrameSource,
    sampling_config: SamplingConfig | None = None,
    progress_callback: ProgressCallback | None = None,
    *,
    vision_config: VisionConfig | None = None,
    report_config: ReportConfig | None = None,
    tracker_config: TrackerConfig | None = None,
    analyze: FrameAnalyzer | None = None,
    write_report: ReportWriter | None = None,
    log_progress: bool = False,
) -> AnalysisResult:
    """
    Sample -> fetch -> infer (one frame at a time) -> link -> aggregate.

    Per-frame fetch and inference failures are absorbed; only a run where not
    a single frame could be fetched raises NoUsableFramesError.
    """
    sampling_config = sampling_config or SamplingConfig()
    sampling_config.validate()
    tracker_config = tracker_config or TrackerConfig()
    tracker_config.validate()
    if analyze is None:
        vision_config = vision_config or VisionConfig()
        vision_config.validate()
        analyze = partial(analyze_frame, config=vision_config)
    if write_report is None:
        report_config = report_config or ReportConfig()
        report_config.validate()
        write_report = partial(generate_report, config=report_config)

    progress = ProgressReporter(progress_callback, log_progress=log_progress)
    progress(SETUP_PERCENT, "Initializing video processor...")

    timestamps = sample_for_config(source.video.duration_sec, sampling_config)
    extracted = extract_frames(source, timestamps, progress)
    if not extracted:
        raise NoUsableFramesError(len(timestamps))
    total = len(extracted)
    progress(EXTRACTED_PERCENT, f"Extracted {total} frames. Preparing vision model...")

    detections: list[FrameDetections] = []
    for idx, (timestamp, image) in enumerate(extracted):
        progress(
            _span(EXTRACTED_PERCENT, INFERENCE_END_PERCENT, idx, total),
            f"Scanning frame {idx + 1} of {total} for biological structures...",
        )
        detections.append(analyze(image, timestamp))

    progress(TRACKING_PERCENT, "Tracking cell trajectories...")
    frames = link_cells(detections, tracker_config)

    progress(REPORT_PERCENT, "Synthesizing final scientific report...")
    stats = compute_statistics(frames)
    extended_report = write_report(stats)

    progress(FINALIZE_PERCENT, "Finalizing results...")
    result = AnalysisResult(
        frames=frames,
        summary=build_summary(stats),
        extended_report=extended_report,
        statistics=stats,
    )
    progress(100.0, "Analysis complete!")
    return result


def analyze_video(
    video_path: str | Path,
    sampling_config: SamplingConfig | None = None,
    progress_callback: ProgressCallback | None = None,
    **kwargs: object,
) -> AnalysisResult:
    sampling_config = sampling_config or SamplingConfig()
    with OpenCVFrameSource(video_path, sampling_config) as source:
        return run_analysis(source, sampling_config, progress_callback, **kwargs)  # type: ignore[arg-type]
