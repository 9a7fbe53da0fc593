from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
import time
from typing import Any, Callable, Mapping

from .chat import (
    ChatTransport,
    extract_chat_completion_text,
    extract_json_object_from_text,
    image_bytes_to_data_url,
    post_chat_completion,
)
from .errors import VisionServiceError
from .types import Detection, EventKind, FrameDetections, FrameEvent


logger = logging.getLogger(__name__)

DEFAULT_STATUS = "Normal"

CELL_ANALYSIS_PROMPT = """\
You are an expert in biology and computer vision optimized for biology applications. \
Analyze this microscopy frame and provide a comprehensive biological assessment.

## 1. CELL DETECTION & LOCALIZATION
Identify ALL visible cells (including partial cells at frame edges). For each cell, provide:
- x, y: center coordinates as percentage of frame dimensions (0-100).
- r: approximate cell radius as percentage of frame width (0-100).
Use the cell's visible boundary/membrane to determine measurements.

## 2. CELLULAR STATE ANALYSIS
Assign each cell a concise status label (1-3 words):
- Morphology-based: 'Dividing', 'Metaphase', 'Anaphase', 'Telophase', 'Apoptotic', 'Lysing', 'Blebbing'
- Phenotype/Shape: 'Elongated', 'Spreading', 'Rounding', 'Adhering', 'Polarized'
- Functional: 'Extending Protrusion', 'Retracting'
- Default: 'Normal' (for cells with no distinctive features)

## 3. FRAME-LEVEL EVENTS
List significant biological events observable in this frame:
- Mitotic events: prophase, metaphase plate formation, chromosome segregation, cytokinesis.
- Cell death: apoptotic bodies, membrane rupture, cellular fragmentation.
- Cell-cell interactions: contact inhibition, cell fusion, aggregation.

Respond with a single JSON object and nothing else:
{"cellCount": <integer>, "cells": [{"x": <number>, "y": <number>, "r": <number>, "status": <string>}], \
"frameEvents": [<string>, ...]}
Use an empty frameEvents list when nothing notable happens.
"""

# First matching rule wins; anything unmatched is an Observation.
EVENT_KIND_RULES: tuple[tuple[tuple[str, ...], EventKind], ...] = (
    (("mitosis", "divid", "phase"), EventKind.MITOSIS),
    (("apoptosis", "death", "lysing"), EventKind.APOPTOSIS),
    (("fusion", "contact"), EventKind.INTERACTION),
)


@dataclass(slots=True)
class VisionConfig:
    endpoint: str = "http://localhost:8000/v1/chat/completions"
    model: str = "Qwen/Qwen2.5-VL-7B-Instruct"
    prompt: str = CELL_ANALYSIS_PROMPT
    max_tokens: int = 4096
    timeout_sec: float = 120.0
    temperature: float = 0.0
    api_key: str | None = None
    max_attempts: int = 3
    backoff_base_sec: float = 1.0
    json_response_format: bool = True

    def validate(self) -> None:
        if not self.endpoint.strip():
            raise ValueError("Vision endpoint cannot be empty")
        if not self.model.strip():
            raise ValueError("Vision model cannot be empty")
        if not self.prompt.strip():
            raise ValueError("Vision prompt cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_sec <= 0:
            raise ValueError("timeout_sec must be > 0")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.backoff_base_sec < 0:
            raise ValueError("backoff_base_sec must be >= 0")


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def classify_event(description: str) -> EventKind:
    text = description.lower()
    for needles, kind in EVENT_KIND_RULES:
        if any(needle in text for needle in needles):
            return kind
    return EventKind.OBSERVATION


def backoff_delay(attempt: int, base_sec: float) -> float:
    """Wait before the retry that follows `attempt` (0-based): base * 2**attempt."""
    return float(base_sec) * (2 ** int(attempt))


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, value))


def normalize_detections(raw_cells: Any) -> list[Detection]:
    """Keep detections with numeric x, y, r; assign frame-local ids 1..n."""
    if not isinstance(raw_cells, list):
        return []
    out: list[Detection] = []
    dropped = 0
    for item in raw_cells:
        if not isinstance(item, Mapping):
            dropped += 1
            continue
        x = _finite_number(item.get("x"))
        y = _finite_number(item.get("y"))
        r = _finite_number(item.get("r"))
        if x is None or y is None or r is None:
            dropped += 1
            continue
        status = item.get("status")
        if not isinstance(status, str) or not status.strip():
            status = DEFAULT_STATUS
        out.append(
            Detection(
                x=_clamp_percent(x),
                y=_clamp_percent(y),
                r=_clamp_percent(r),
                status=status.strip(),
                id=len(out) + 1,
            )
        )
    if dropped:
        logger.warning("Dropped %d detection(s) missing numeric x/y/r", dropped)
    return out


def normalize_events(raw_events: Any) -> list[FrameEvent]:
    if not isinstance(raw_events, list):
        return []
    out: list[FrameEvent] = []
    for item in raw_events:
        if not isinstance(item, str) or not item.strip():
            continue
        description = item.strip()
        out.append(FrameEvent(kind=classify_event(description), description=description))
    return out


def normalize_frame_payload(data: Mapping[str, Any], timestamp: float) -> FrameDetections:
    detections = normalize_detections(data.get("cells"))
    events = normalize_events(data.get("frameEvents"))
    count = _finite_number(data.get("cellCount"))
    cell_count = int(count) if count is not None and count > 0 else len(detections)
    return FrameDetections(
        timestamp=float(timestamp),
        cell_count=cell_count,
        detections=tuple(detections),
        events=tuple(events),
    )


def build_frame_request(config: VisionConfig, image: bytes) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": config.model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": image_bytes_to_data_url(image)}},
                    {"type": "text", "text": config.prompt},
                ],
            }
        ],
        "max_tokens": int(config.max_tokens),
        "temperature": float(config.temperature),
    }
    if config.json_response_format:
        payload["response_format"] = {"type": "json_object"}
    return payload


def _request_frame(
    config: VisionConfig,
    image: bytes,
    timestamp: float,
    transport: ChatTransport,
) -> FrameDetections:
    response = transport(
        endpoint=config.endpoint,
        payload=build_frame_request(config, image),
        timeout_sec=config.timeout_sec,
        api_key=config.api_key,
    )
    text = extract_chat_completion_text(response)
    if not text:
        return FrameDetections.empty(timestamp)
    try:
        data = extract_json_object_from_text(text)
    except ValueError as exc:
        raise VisionServiceError(str(exc), retryable=False) from exc
    return normalize_frame_payload(data, timestamp)


def analyze_frame(
    image: bytes,
    timestamp: float,
    config: VisionConfig,
    *,
    transport: ChatTransport = post_chat_completion,
    sleep: Callable[[float], None] = time.sleep,
) -> FrameDetections:
    """
    Detect and phenotype cells in one frame.

    Never raises for service problems: after `max_attempts` retryable failures,
    or on the first non-retryable one, the frame comes back empty.
    """
    state = RetryState.ATTEMPTING
    attempt = 0
    result = FrameDetections.empty(timestamp)
    while state not in (RetryState.SUCCEEDED, RetryState.FAILED):
        if state is RetryState.WAITING:
            delay = backoff_delay(attempt - 1, config.backoff_base_sec)
            logger.warning(
                "Frame %.2fs failed (attempt %d/%d); retrying in %.1fs",
                timestamp,
                attempt,
                config.max_attempts,
                delay,
            )
            sleep(delay)
            state = RetryState.ATTEMPTING
            continue

        try:
            result = _request_frame(config, image, timestamp, transport)
            state = RetryState.SUCCEEDED
        except VisionServiceError as exc:
            attempt += 1
            if not exc.retryable:
                logger.error("Frame %.2fs failed with a non-retryable error: %s", timestamp, exc)
                state = RetryState.FAILED
            elif attempt >= config.max_attempts:
                logger.error("Frame %.2fs failed after %d attempts: %s", timestamp, attempt, exc)
                state = RetryState.FAILED
            else:
                state = RetryState.WAITING

    if state is RetryState.FAILED:
        return FrameDetections.empty(timestamp)
    return result
