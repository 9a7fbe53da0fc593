from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterable, Sequence

import numpy as np

from .errors import TrackerInputError
from .types import Detection, EventKind, FrameDetections, FrameEvent, FrameResult, TrackedCell


@dataclass(slots=True)
class TrackerConfig:
    # Percent-of-frame units; wide because sampled frames can be seconds apart.
    link_threshold: float = 25.0
    history_length: int = 10

    def validate(self) -> None:
        if not math.isfinite(self.link_threshold) or self.link_threshold <= 0:
            raise ValueError("link_threshold must be > 0")
        if self.history_length <= 0:
            raise ValueError("history_length must be > 0")


def _check_detection(det: Detection, frame_index: int) -> None:
    for name, value in (("x", det.x), ("y", det.y), ("r", det.r)):
        if math.isnan(value) or value < 0:
            raise TrackerInputError(
                f"Frame {frame_index}: detection has invalid {name}={value!r}"
            )


def growth_event(total: int) -> FrameEvent:
    return FrameEvent(kind=EventKind.GROWTH, description=f"New cell detected (Total: {total})")


class CellTracker:
    """
    Greedy nearest-neighbour linker over an ordered sequence of frames.

    Each current detection independently picks the closest previous-frame cell
    under the threshold. A previous cell stays a candidate after it is matched,
    so two detections may inherit the same id.
    """

    def __init__(self, config: TrackerConfig | None = None) -> None:
        self.config = config or TrackerConfig()
        self.config.validate()

    def link(self, frames: Iterable[FrameDetections]) -> list[FrameResult]:
        next_id = 1
        previous: list[TrackedCell] = []
        out: list[FrameResult] = []

        for frame_index, frame in enumerate(frames):
            for det in frame.detections:
                _check_detection(det, frame_index)

            cells: list[TrackedCell] = []
            minted = 0
            prev_xy = np.array([(cell.x, cell.y) for cell in previous], dtype=np.float64).reshape(-1, 2)
            for det in frame.detections:
                match = self._nearest(det, previous, prev_xy)
                if match is None:
                    cells.append(
                        TrackedCell(id=next_id, x=det.x, y=det.y, r=det.r, status=det.status)
                    )
                    next_id += 1
                    minted += 1
                    continue
                history = (*match.history, (match.x, match.y))[-self.config.history_length :]
                cells.append(
                    TrackedCell(
                        id=match.id,
                        x=det.x,
                        y=det.y,
                        r=det.r,
                        status=det.status,
                        history=history,
                    )
                )

            events = list(frame.events)
            if frame_index > 0 and minted > 0 and len(cells) > len(previous):
                if not any(event.kind is EventKind.MITOSIS for event in frame.events):
                    events.append(growth_event(len(cells)))

            out.append(
                FrameResult(
                    timestamp=frame.timestamp,
                    cell_count=frame.cell_count,
                    cells=tuple(cells),
                    events=tuple(events),
                )
            )
            previous = cells
        return out

    def _nearest(
        self,
        det: Detection,
        previous: Sequence[TrackedCell],
        prev_xy: np.ndarray,
    ) -> TrackedCell | None:
        if not previous:
            return None
        distances = np.hypot(prev_xy[:, 0] - det.x, prev_xy[:, 1] - det.y)
        # argmin returns the first minimum, so ties go to the earlier previous cell.
        best = int(np.argmin(distances))
        if distances[best] < self.config.link_threshold:
            return previous[best]
        return None


def link_cells(
    frames: Iterable[FrameDetections],
    config: TrackerConfig | None = None,
) -> list[FrameResult]:
    return CellTracker(config).link(frames)
