from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any

from .errors import AnalysisError, friendly_error_message
from .inference import VisionConfig
from .pipeline import analyze_video
from .report import ReportConfig
from .sampling import SamplingConfig
from .tracking import TrackerConfig

DEFAULT_CLI_CONFIG_PATH = Path("config/analysis.defaults.json")
API_KEY_ENV = "CELLTRACK_API_KEY"


def _load_cli_config(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("CLI config must be a JSON object")
    payload = raw.get("analysis")
    if isinstance(payload, dict):
        raw = payload
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            continue
        out[key.strip().replace("-", "_")] = value
    return out


def _apply_config_defaults(
    *,
    args: argparse.Namespace,
    parser: argparse.ArgumentParser,
    config: dict[str, Any],
) -> argparse.Namespace:
    """Fill options still at their parser default from the config file."""
    if not config:
        return args
    defaults: dict[str, Any] = {}
    for action in parser._actions:
        dest = getattr(action, "dest", None)
        if not dest:
            continue
        defaults[dest] = action.default

    for dest, value in config.items():
        if not hasattr(args, dest) or dest == "config":
            continue
        if getattr(args, dest) == defaults.get(dest):
            setattr(args, dest, value)
    return args


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track and phenotype cells in a time-lapse microscopy video")
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CLI_CONFIG_PATH),
        help="JSON file with default option values (CLI flags still take priority)",
    )
    parser.add_argument("--video", default=None, help="Input video path")
    parser.add_argument("--output-dir", default="data/analysis_run", help="Directory for analysis.json and report.md")

    sampling = parser.add_argument_group("sampling")
    sampling.add_argument("--min-interval-sec", type=float, default=1.0)
    sampling.add_argument("--max-frames", type=int, default=30)
    sampling.add_argument("--fallback-duration-sec", type=float, default=30.0)
    sampling.add_argument("--frame-timeout-sec", type=float, default=3.0)
    sampling.add_argument("--max-dimension", type=int, default=1024)
    sampling.add_argument("--jpeg-quality", type=int, default=60)

    vision = parser.add_argument_group("vision model")
    vision.add_argument("--endpoint", default="http://localhost:8000/v1/chat/completions")
    vision.add_argument("--model", default="Qwen/Qwen2.5-VL-7B-Instruct")
    vision.add_argument("--api-key", default=None, help=f"Bearer key; falls back to ${API_KEY_ENV}")
    vision.add_argument("--max-tokens", type=int, default=4096)
    vision.add_argument("--timeout-sec", type=float, default=120.0)
    vision.add_argument("--temperature", type=float, default=0.0)
    vision.add_argument("--max-attempts", type=int, default=3)
    vision.add_argument("--backoff-base-sec", type=float, default=1.0)
    vision.add_argument(
        "--no-json-response-format",
        action="store_true",
        help="Do not send response_format=json_object (for servers that reject it)",
    )

    report = parser.add_argument_group("report")
    report.add_argument("--report-endpoint", default=None, help="Defaults to --endpoint")
    report.add_argument("--report-model", default=None, help="Defaults to --model")
    report.add_argument("--report-max-tokens", type=int, default=1500)
    report.add_argument("--no-report", action="store_true", help="Skip the narrative report request")

    tracking = parser.add_argument_group("tracking")
    tracking.add_argument("--link-threshold", type=float, default=25.0)
    tracking.add_argument("--history-length", type=int, default=10)

    parser.add_argument("--log-progress", action="store_true", help="Print progress lines to stderr")
    parser.add_argument("--verbose", action="store_true", help="Log at INFO level")
    return parser


def _build_configs(args: argparse.Namespace) -> tuple[SamplingConfig, VisionConfig, ReportConfig, TrackerConfig]:
    api_key = args.api_key or os.environ.get(API_KEY_ENV) or None

    sampling_config = SamplingConfig(
        min_interval_sec=float(args.min_interval_sec),
        max_frames=int(args.max_frames),
        fallback_duration_sec=float(args.fallback_duration_sec),
        frame_timeout_sec=float(args.frame_timeout_sec),
        max_dimension=int(args.max_dimension),
        jpeg_quality=int(args.jpeg_quality),
    )
    sampling_config.validate()

    vision_config = VisionConfig(
        endpoint=str(args.endpoint),
        model=str(args.model),
        max_tokens=int(args.max_tokens),
        timeout_sec=float(args.timeout_sec),
        temperature=float(args.temperature),
        api_key=api_key,
        max_attempts=int(args.max_attempts),
        backoff_base_sec=float(args.backoff_base_sec),
        json_response_format=not bool(args.no_json_response_format),
    )
    vision_config.validate()

    report_config = ReportConfig(
        endpoint=str(args.report_endpoint or args.endpoint),
        model=str(args.report_model or args.model),
        max_tokens=int(args.report_max_tokens),
        timeout_sec=float(args.timeout_sec),
        api_key=api_key,
        enabled=not bool(args.no_report),
    )
    report_config.validate()

    tracker_config = TrackerConfig(
        link_threshold=float(args.link_threshold),
        history_length=int(args.history_length),
    )
    tracker_config.validate()
    return sampling_config, vision_config, report_config, tracker_config


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_path = args.config if args.config and Path(args.config).exists() else None
    args = _apply_config_defaults(args=args, parser=parser, config=_load_cli_config(config_path))

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if not args.video:
        parser.error("--video is required (or set `video` in --config)")

    try:
        sampling_config, vision_config, report_config, tracker_config = _build_configs(args)
        result = analyze_video(
            args.video,
            sampling_config,
            vision_config=vision_config,
            report_config=report_config,
            tracker_config=tracker_config,
            log_progress=bool(args.log_progress),
        )
    except (AnalysisError, ValueError, FileNotFoundError) as exc:
        message = str(exc) if isinstance(exc, FileNotFoundError) else friendly_error_message(exc)
        print(f"error: {message}", file=sys.stderr)
        return 1

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    analysis_path = out_dir / "analysis.json"
    report_path = out_dir / "report.md"
    analysis_path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=True), encoding="utf-8")
    report_path.write_text(result.extended_report, encoding="utf-8")

    summary = {
        "video": str(args.video),
        "summary": result.summary,
        "frame_count": len(result.frames),
        "statistics": result.statistics.to_flat_dict() if result.statistics else {},
        "analysis": str(analysis_path),
        "report": str(report_path),
    }
    print(json.dumps(summary, indent=2, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
