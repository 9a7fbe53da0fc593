from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import json
import logging
from typing import Any, Sequence

from .chat import ChatTransport, extract_chat_completion_text, post_chat_completion
from .errors import VisionServiceError
from .types import EventKind, FrameResult, RunStatistics


logger = logging.getLogger(__name__)

NO_DATA_REPORT = "No data available for report."
FALLBACK_REPORT = (
    "## Analysis Report\n\n"
    "Automated report generation failed due to network or quota limits. "
    "Please refer to the raw data charts."
)

REPORT_PROMPT_TEMPLATE = """\
You are a senior computational biologist writing a formal laboratory report based on \
automated video analysis data.

Data: {stats}

Write a "Scientific Analysis Report" in Markdown with the following structure:
## Abstract
(Brief summary of the experiment and findings)

## Methodology: Computer Vision Analysis
(Briefly explain that a multimodal vision model tracked cell centroids and morphology over time)

## Results: Population Dynamics
(Discuss the trends in cell count, growth rates, and stability. Use the numbers provided.)

## Event Analysis
(Discuss observed biological events like mitosis or cell death based on the stats.)

## Conclusion
(Final biological interpretation of the sample's health and proliferation status.)

Tone: academic, objective, professional. Do not use placeholders.
"""


@dataclass(slots=True)
class ReportConfig:
    endpoint: str = "http://localhost:8000/v1/chat/completions"
    model: str = "Qwen/Qwen2.5-VL-7B-Instruct"
    max_tokens: int = 1500
    timeout_sec: float = 120.0
    temperature: float = 0.2
    api_key: str | None = None
    enabled: bool = True

    def validate(self) -> None:
        if not self.enabled:
            return
        if not self.endpoint.strip():
            raise ValueError("Report endpoint cannot be empty")
        if not self.model.strip():
            raise ValueError("Report model cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_sec <= 0:
            raise ValueError("timeout_sec must be > 0")


def compute_statistics(frames: Sequence[FrameResult]) -> RunStatistics:
    if not frames:
        return RunStatistics(
            duration_sec=0.0,
            frames_analyzed=0,
            initial_population=0,
            final_population=0,
            peak_population=0,
            average_population=0.0,
        )
    counts = [int(frame.cell_count) for frame in frames]
    tally: Counter[str] = Counter(event.kind.value for frame in frames for event in frame.events)
    return RunStatistics(
        duration_sec=float(frames[-1].timestamp),
        frames_analyzed=len(frames),
        initial_population=counts[0],
        final_population=counts[-1],
        peak_population=max(counts),
        average_population=sum(counts) / len(counts),
        event_counts={kind.value: int(tally.get(kind.value, 0)) for kind in EventKind},
    )


def build_summary(stats: RunStatistics) -> str:
    return (
        f"Analysis complete. Processed {stats.frames_analyzed} frames over "
        f"{stats.duration_sec:.1f} seconds. Average cell count: {stats.average_population:.1f}."
    )


def build_report_prompt(stats: RunStatistics) -> str:
    return REPORT_PROMPT_TEMPLATE.format(stats=json.dumps(stats.to_flat_dict(), ensure_ascii=True))


def generate_report(
    stats: RunStatistics,
    config: ReportConfig,
    *,
    transport: ChatTransport = post_chat_completion,
) -> str:
    """
    Ask the text model for a narrative report built from aggregate numbers only.
    Any failure yields FALLBACK_REPORT; the statistics stay authoritative.
    """
    if stats.frames_analyzed == 0:
        return NO_DATA_REPORT
    if not config.enabled:
        return FALLBACK_REPORT

    payload: dict[str, Any] = {
        "model": config.model,
        "messages": [{"role": "user", "content": build_report_prompt(stats)}],
        "max_tokens": int(config.max_tokens),
        "temperature": float(config.temperature),
    }
    try:
        response = transport(
            endpoint=config.endpoint,
            payload=payload,
            timeout_sec=config.timeout_sec,
            api_key=config.api_key,
        )
    except VisionServiceError as exc:
        logger.warning("Report generation failed: %s", exc)
        return FALLBACK_REPORT
    text = extract_chat_completion_text(response)
    if not text:
        logger.warning("Report generation returned empty text")
        return FALLBACK_REPORT
    return text


def event_timeline(frames: Sequence[FrameResult]) -> list[dict[str, Any]]:
    rows = [
        {"timestamp": frame.timestamp, "type": event.kind.value, "description": event.description}
        for frame in frames
        for event in frame.events
    ]
    rows.sort(key=lambda row: row["timestamp"])
    return rows


def population_series(frames: Sequence[FrameResult]) -> list[tuple[float, int]]:
    return [(float(frame.timestamp), int(frame.cell_count)) for frame in frames]
