"""Time-lapse microscopy cell tracking package."""

from .errors import (
    AnalysisError,
    FrameUnavailableError,
    NoUsableFramesError,
    TrackerInputError,
    VideoOpenError,
    VisionServiceError,
    friendly_error_message,
)
from .frames import FrameSource, OpenCVFrameSource
from .inference import VisionConfig, analyze_frame, classify_event
from .pipeline import ProgressReporter, analyze_video, run_analysis
from .report import ReportConfig, compute_statistics, event_timeline, generate_report, population_series
from .sampling import SamplingConfig, sample_timestamps
from .tracking import CellTracker, TrackerConfig, link_cells
from .types import (
    AnalysisResult,
    Detection,
    EventKind,
    FrameDetections,
    FrameEvent,
    FrameResult,
    RunStatistics,
    TrackedCell,
    VideoHandle,
)

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "CellTracker",
    "Detection",
    "EventKind",
    "FrameDetections",
    "FrameEvent",
    "FrameResult",
    "FrameSource",
    "FrameUnavailableError",
    "NoUsableFramesError",
    "OpenCVFrameSource",
    "ProgressReporter",
    "ReportConfig",
    "RunStatistics",
    "SamplingConfig",
    "TrackedCell",
    "TrackerConfig",
    "TrackerInputError",
    "VideoHandle",
    "VideoOpenError",
    "VisionConfig",
    "VisionServiceError",
    "analyze_frame",
    "analyze_video",
    "classify_event",
    "compute_statistics",
    "event_timeline",
    "friendly_error_message",
    "generate_report",
    "link_cells",
    "population_series",
    "run_analysis",
    "sample_timestamps",
]
