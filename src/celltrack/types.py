from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


Point = tuple[float, float]


class EventKind(str, Enum):
    MITOSIS = "Mitosis"
    APOPTOSIS = "Apoptosis"
    INTERACTION = "Interaction"
    GROWTH = "Growth"
    OBSERVATION = "Observation"


@dataclass(slots=True, frozen=True)
class VideoHandle:
    duration_sec: float
    width: int
    height: int
    fps: float = 0.0


@dataclass(slots=True, frozen=True)
class FrameEvent:
    kind: EventKind
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "description": self.description}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "FrameEvent":
        raw_kind = str(data.get("type", data.get("kind", EventKind.OBSERVATION.value)))
        try:
            kind = EventKind(raw_kind)
        except ValueError:
            kind = EventKind.OBSERVATION
        return FrameEvent(kind=kind, description=str(data.get("description", "")))


@dataclass(slots=True, frozen=True)
class Detection:
    """Single cell found in one frame, before identities are linked."""

    x: float
    y: float
    r: float
    status: str = "Normal"
    id: int = 0


@dataclass(slots=True, frozen=True)
class FrameDetections:
    timestamp: float
    cell_count: int
    detections: tuple[Detection, ...] = ()
    events: tuple[FrameEvent, ...] = ()

    @staticmethod
    def empty(timestamp: float) -> "FrameDetections":
        return FrameDetections(timestamp=float(timestamp), cell_count=0)


@dataclass(slots=True, frozen=True)
class TrackedCell:
    id: int
    x: float
    y: float
    r: float
    status: str = "Normal"
    history: tuple[Point, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "r": self.r,
            "status": self.status,
            "history": [{"x": px, "y": py} for px, py in self.history],
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "TrackedCell":
        required = ("id", "x", "y", "r")
        missing = [key for key in required if key not in data]
        if missing:
            raise ValueError(f"Missing cell fields: {', '.join(missing)}")
        history: list[Point] = []
        for point in data.get("history") or []:
            if isinstance(point, Mapping):
                history.append((float(point["x"]), float(point["y"])))
        return TrackedCell(
            id=int(data["id"]),
            x=float(data["x"]),
            y=float(data["y"]),
            r=float(data["r"]),
            status=str(data.get("status") or "Normal"),
            history=tuple(history),
        )


@dataclass(slots=True, frozen=True)
class FrameResult:
    timestamp: float
    cell_count: int
    cells: tuple[TrackedCell, ...] = ()
    events: tuple[FrameEvent, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cellCount": self.cell_count,
            "cells": [cell.to_dict() for cell in self.cells],
            "events": [event.to_dict() for event in self.events],
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "FrameResult":
        return FrameResult(
            timestamp=float(data.get("timestamp", 0.0)),
            cell_count=int(data.get("cellCount", 0)),
            cells=tuple(TrackedCell.from_dict(item) for item in data.get("cells") or []),
            events=tuple(FrameEvent.from_dict(item) for item in data.get("events") or []),
        )


@dataclass(slots=True, frozen=True)
class RunStatistics:
    duration_sec: float
    frames_analyzed: int
    initial_population: int
    final_population: int
    peak_population: int
    average_population: float
    event_counts: dict[str, int] = field(default_factory=dict)

    def to_flat_dict(self) -> dict[str, Any]:
        """Flat key/value record; the only data handed to the report service."""
        out: dict[str, Any] = {
            "video_duration_seconds": round(self.duration_sec, 3),
            "frames_analyzed": self.frames_analyzed,
            "initial_population": self.initial_population,
            "final_population": self.final_population,
            "peak_population": self.peak_population,
            "average_population": round(self.average_population, 2),
        }
        for kind in EventKind:
            out[f"{kind.value.lower()}_events"] = int(self.event_counts.get(kind.value, 0))
        return out


@dataclass(slots=True)
class AnalysisResult:
    frames: list[FrameResult]
    summary: str
    extended_report: str
    statistics: RunStatistics | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "frames": [frame.to_dict() for frame in self.frames],
            "summary": self.summary,
            "extendedReport": self.extended_report,
        }
        if self.statistics is not None:
            payload["statistics"] = self.statistics.to_flat_dict()
        return payload

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AnalysisResult":
        raw_frames = data.get("frames")
        if not isinstance(raw_frames, list):
            raise ValueError("Analysis payload must contain a `frames` list")
        frames = [FrameResult.from_dict(item) for item in raw_frames if isinstance(item, Mapping)]
        return AnalysisResult(
            frames=frames,
            summary=str(data.get("summary", "")),
            extended_report=str(data.get("extendedReport", "")),
        )
