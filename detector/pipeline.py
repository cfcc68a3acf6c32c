from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import cv2
import yaml

from capture.camera import ImageFolderSource, VideoFrameSource, annotate_frame
from common.logging_setup import get_logger, setup_logging
from common.types import ImageFrame
from common.utils import RateTimer, RunningStats, timer_ms
from detector.features import FeatureExtractor
from detector.pattern_detector import DetectorConfig, PatternDetector
from detector.pose import estimate_pose
from detector.preprocess import CameraModel


log = get_logger("detector.pipeline")


def _load_yaml(path: str) -> Dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _read_images(paths: List[str]) -> List:
    images = []
    for p in paths:
        img = cv2.imread(p, cv2.IMREAD_UNCHANGED)
        if img is None:
            raise FileNotFoundError(f"Cannot read pattern image: {p}")
        images.append(img)
    return images


def _write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def build_detector(P: Dict, pattern_images: List[str], pattern_files: List[str]) -> PatternDetector:
    """Construct and train a detector from config plus pattern sources."""
    detector = PatternDetector(
        detector=FeatureExtractor.from_dict(P.get("features", {})),
        config=DetectorConfig.from_dict(P.get("detector", {})),
    )
    patterns = []
    if pattern_images:
        names = [Path(p).stem for p in pattern_images]
        patterns += detector.build_patterns_from_images(_read_images(pattern_images), names=names)
    if pattern_files:
        patterns += detector.build_patterns_from_files(pattern_files)
    if not patterns:
        raise ValueError("No usable patterns: pass --patterns and/or --pattern-files")
    detector.train(patterns)
    return detector


def _frame_source(args: argparse.Namespace) -> Iterator[ImageFrame]:
    if args.images:
        return ImageFolderSource(args.images, glob=args.glob, max_frames=args.max_frames).frames()
    if args.webcam is not None:
        return VideoFrameSource(int(args.webcam), max_frames=args.max_frames).frames()
    if args.video:
        return VideoFrameSource(args.video, max_frames=args.max_frames).frames()
    raise ValueError("One of --video, --webcam or --images is required")


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Planar pattern detector")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--video", default=None, help="Video file to process")
    ap.add_argument("--webcam", type=int, default=None, help="Webcam index to process")
    ap.add_argument("--images", default=None, help="Folder of frames to process")
    ap.add_argument("--glob", default="*.png", help="Frame file pattern for --images")
    ap.add_argument("--patterns", nargs="*", default=None, help="Pattern images (override config)")
    ap.add_argument("--pattern-files", nargs="*", default=None, help="Serialized patterns (override config)")
    ap.add_argument("--max-frames", type=int, default=None)
    ap.add_argument("--preview-dir", default=None, help="Write annotated frames here")
    args = ap.parse_args(argv)

    P = _load_yaml(args.config)
    log_cfg = P.get("logging", {})
    setup_logging(log_cfg.get("level", "INFO"), json_format=bool(log_cfg.get("json", True)), force=True)

    pat_cfg = P.get("patterns", {}) or {}
    pattern_images = args.patterns if args.patterns is not None else list(pat_cfg.get("images") or [])
    pattern_files = args.pattern_files if args.pattern_files is not None else list(pat_cfg.get("files") or [])

    intrinsics = (P.get("camera", {}) or {}).get("intrinsics")
    camera = CameraModel.from_yaml(intrinsics) if intrinsics else None

    metrics_path = Path(log_cfg.get("metrics_file", "logs/detections.jsonl"))
    preview_dir = Path(args.preview_dir) if args.preview_dir else None
    if preview_dir is not None:
        preview_dir.mkdir(parents=True, exist_ok=True)

    rate = RateTimer()
    latency = RunningStats()
    found_count = 0

    with build_detector(P, pattern_images, pattern_files) as detector:
        find = timer_ms(detector.find_pattern)
        log.info(
            "Pattern detector pipeline started",
            extra={"extra": {"patterns": len(detector.patterns), "config": detector.config.to_dict()}},
        )
        n = 0
        for n, frame in enumerate(_frame_source(args), start=1):
            (found, info), dt_ms = find(frame)
            latency.add(dt_ms)
            hz = rate.tick()

            row: Dict = {"ts": frame.ts, "source": frame.source_id, "latency_ms": round(dt_ms, 2)}
            if found and info is not None:
                found_count += 1
                row.update({"status": "found", **info.to_dict()})
                if camera is not None:
                    pose = estimate_pose(detector.patterns[info.pattern_idx], info, camera)
                    row["pose"] = pose.to_dict() if pose is not None else None
            else:
                row["status"] = "not_found"
            _write_metrics_row(metrics_path, row)

            if preview_dir is not None:
                text = f"{info.pattern_name} ({info.inliers})" if found and info else "not found"
                corners = info.points2d if found and info else None
                cv2.imwrite(str(preview_dir / f"frame_{n:06d}.png"), annotate_frame(frame.frame, corners, text))

            if n % 50 == 0:
                log.info(
                    "Progress",
                    extra={"extra": {"frames": n, "found": found_count, "rate_hz": round(hz, 2),
                                     "latency_ms_mean": round(latency.mean, 2),
                                     "latency_ms_std": round(latency.std, 2)}},
                )

    log.info(
        "Pipeline finished",
        extra={"extra": {"frames": n, "found": found_count, "latency_ms_mean": round(latency.mean, 2)}},
    )


if __name__ == "__main__":
    main()
