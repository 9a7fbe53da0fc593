from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import streamlit as st

from celltrack.errors import AnalysisError, friendly_error_message
from celltrack.inference import VisionConfig
from celltrack.pipeline import analyze_video
from celltrack.report import ReportConfig, compute_statistics, event_timeline, population_series
from celltrack.sampling import SamplingConfig
from celltrack.tracking import TrackerConfig
from celltrack.types import AnalysisResult


DEFAULT_RUN_DIR = Path("data/analysis_runs")
EVENT_ICONS = {
    "Mitosis": ":zap:",
    "Apoptosis": ":warning:",
    "Interaction": ":link:",
    "Growth": ":seedling:",
    "Observation": ":mag:",
}


def _expand_path(value: str) -> Path:
    return Path(value).expanduser().resolve()


def _safe_analysis_read(raw: bytes) -> AnalysisResult | None:
    try:
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            return None
        return AnalysisResult.from_dict(payload)
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError, KeyError, TypeError):
        return None


def _render_metrics(result: AnalysisResult) -> None:
    stats = result.statistics or compute_statistics(result.frames)
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("Frames", stats.frames_analyzed)
    c2.metric("Duration (s)", f"{stats.duration_sec:.1f}")
    c3.metric("Initial", stats.initial_population)
    c4.metric("Final", stats.final_population, delta=stats.final_population - stats.initial_population)
    c5.metric("Peak", stats.peak_population)


def _render_population_chart(result: AnalysisResult) -> None:
    series = population_series(result.frames)
    if not series:
        return
    st.markdown("### Population Growth")
    st.line_chart(
        {"time_sec": [t for t, _ in series], "cell_count": [c for _, c in series]},
        x="time_sec",
        y="cell_count",
    )


def _render_event_log(result: AnalysisResult) -> None:
    st.markdown("### Event Log")
    rows = event_timeline(result.frames)
    if not rows:
        st.info("No significant events detected.")
        return
    for row in rows:
        icon = EVENT_ICONS.get(str(row["type"]), ":mag:")
        st.write(f"{icon} `{float(row['timestamp']):6.1f}s` **{row['type']}**: {row['description']}")


def _render_frame_inspector(result: AnalysisResult) -> None:
    if not result.frames:
        return
    st.markdown("### Frame Inspector")
    labels = [f"{frame.timestamp:.1f}s ({len(frame.cells)} cells)" for frame in result.frames]
    index = st.select_slider("Frame", options=list(range(len(labels))), format_func=lambda i: labels[i])
    frame = result.frames[int(index)]
    rows: list[dict[str, Any]] = [
        {
            "id": cell.id,
            "x": round(cell.x, 2),
            "y": round(cell.y, 2),
            "r": round(cell.r, 2),
            "status": cell.status,
            "trail_points": len(cell.history),
        }
        for cell in frame.cells
    ]
    st.caption(f"Reported cell count: {frame.cell_count}")
    if rows:
        st.dataframe(rows, use_container_width=True)
    else:
        st.info("No cells detected in this frame.")


def _render_result(result: AnalysisResult) -> None:
    st.success(result.summary)
    _render_metrics(result)
    tabs = st.tabs(["Overview", "Frames", "Report"])
    with tabs[0]:
        _render_population_chart(result)
        _render_event_log(result)
    with tabs[1]:
        _render_frame_inspector(result)
    with tabs[2]:
        st.markdown(result.extended_report)
    st.download_button(
        "Download analysis JSON",
        data=json.dumps(result.to_dict(), indent=2, ensure_ascii=True),
        file_name="analysis.json",
        mime="application/json",
    )


def _render_runner() -> None:
    st.header("Analyze Video")
    uploaded_video = st.file_uploader(
        "Select time-lapse video",
        type=["mp4", "mov", "mkv", "avi", "webm", "m4v"],
        accept_multiple_files=False,
    )

    c1, c2 = st.columns(2)
    with c1:
        endpoint = st.text_input("Vision endpoint", value="http://localhost:8000/v1/chat/completions")
        model = st.text_input("Vision model", value="Qwen/Qwen2.5-VL-7B-Instruct")
        api_key = st.text_input("API key (optional)", value="", type="password")
    with c2:
        max_frames = st.number_input("Max frames", min_value=1, max_value=300, value=30, step=1)
        min_interval = st.number_input("Min interval (s)", min_value=0.1, max_value=600.0, value=1.0, step=0.5)
        write_report = st.checkbox("Generate narrative report", value=True)

    with st.expander("Advanced (optional)", expanded=False):
        a1, a2 = st.columns(2)
        with a1:
            link_threshold = st.number_input("Link threshold (% of frame)", min_value=1.0, max_value=100.0, value=25.0)
            history_length = st.number_input("Trail length", min_value=1, max_value=100, value=10, step=1)
        with a2:
            max_attempts = st.number_input("Attempts per frame", min_value=1, max_value=10, value=3, step=1)
            timeout_sec = st.number_input("Request timeout (s)", min_value=5.0, max_value=600.0, value=120.0)

    if not st.button("Run Analysis", type="primary"):
        return
    if uploaded_video is None:
        st.error("Please select a video file before running.")
        return

    run_dir = _expand_path(str(DEFAULT_RUN_DIR / (Path(uploaded_video.name).stem or "video_run")))
    run_dir.mkdir(parents=True, exist_ok=True)
    video_path = run_dir / (Path(uploaded_video.name).name or "video.mp4")
    video_path.write_bytes(uploaded_video.getbuffer())

    key = api_key.strip() or os.environ.get("CELLTRACK_API_KEY") or None
    bar = st.progress(0, text="Starting analysis engine...")

    def on_progress(percent: float, message: str) -> None:
        bar.progress(int(round(percent)), text=message)

    try:
        result = analyze_video(
            video_path,
            SamplingConfig(min_interval_sec=float(min_interval), max_frames=int(max_frames)),
            on_progress,
            vision_config=VisionConfig(
                endpoint=endpoint,
                model=model,
                api_key=key,
                timeout_sec=float(timeout_sec),
                max_attempts=int(max_attempts),
            ),
            report_config=ReportConfig(
                endpoint=endpoint,
                model=model,
                api_key=key,
                timeout_sec=float(timeout_sec),
                enabled=bool(write_report),
            ),
            tracker_config=TrackerConfig(
                link_threshold=float(link_threshold),
                history_length=int(history_length),
            ),
        )
    except (AnalysisError, ValueError, FileNotFoundError) as exc:
        st.error(f"Analysis failed: {friendly_error_message(exc)}")
        return

    (run_dir / "analysis.json").write_text(
        json.dumps(result.to_dict(), indent=2, ensure_ascii=True),
        encoding="utf-8",
    )
    st.session_state["last_result"] = result
    st.session_state["last_run_dir"] = str(run_dir)


def _render_loader() -> None:
    st.header("Load Saved Analysis")
    uploaded = st.file_uploader("Upload analysis.json", type=["json"])
    if uploaded is None:
        return
    result = _safe_analysis_read(uploaded.getvalue())
    if result is None:
        st.error("File is not a valid analysis JSON.")
        return
    st.session_state["last_result"] = result


def main() -> None:
    st.set_page_config(page_title="CellTrack", layout="wide")
    mode = st.sidebar.radio("View", options=["Analyze Video", "Load Saved Analysis"], index=0)
    if mode == "Analyze Video":
        _render_runner()
    else:
        _render_loader()

    result = st.session_state.get("last_result")
    if isinstance(result, AnalysisResult):
        _render_result(result)


if __name__ == "__main__":
    main()
