#!/usr/bin/env python3
"""
Train patterns from reference images and write their serialized form, so a
detector can later load them without re-running feature extraction.

Examples:
  python scripts/build_patterns.py --images data/markers/*.png --out data/patterns
  python scripts/build_patterns.py --images logo.jpg --out data/patterns --format xml --method akaze
  python scripts/build_patterns.py --synthesize 3 --out data/patterns
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

import cv2

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from detector.features import FeatureExtractor
from detector.pattern_detector import DetectorConfig, PatternDetector
from detector.patterns import save_pattern
from detector.synthetic import synthesize_pattern


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--images", nargs="*", default=[], help="Pattern images to train")
    ap.add_argument("--synthesize", type=int, default=0, help="Also generate N synthetic markers")
    ap.add_argument("--size", default="400x300", help="Synthetic marker WxH")
    ap.add_argument("--seed", type=int, default=1234, help="Seed of the first synthetic marker")
    ap.add_argument("--out", default="data/patterns", help="Output directory")
    ap.add_argument("--format", choices=["yml", "xml", "json"], default="yml")
    ap.add_argument("--method", default="orb", help="Feature method (orb|akaze|brisk)")
    ap.add_argument("--nfeatures", type=int, default=1000)
    ap.add_argument("--fail-on-empty", action="store_true", help="Abort if an image has no features")
    args = ap.parse_args(argv)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)

    images, names = [], []
    for p in args.images:
        img = cv2.imread(p, cv2.IMREAD_UNCHANGED)
        if img is None:
            raise SystemExit(f"[error] cannot read {p}")
        images.append(img)
        names.append(Path(p).stem)

    w, h = [int(x) for x in args.size.lower().split("x")]
    for k in range(args.synthesize):
        seed = args.seed + k
        img = synthesize_pattern((w, h), seed=seed)
        png = out / f"synthetic_{seed}.png"
        cv2.imwrite(str(png), img)
        images.append(img)
        names.append(png.stem)

    if not images:
        raise SystemExit("[error] nothing to do: pass --images and/or --synthesize")

    config = DetectorConfig(on_empty_pattern="raise" if args.fail_on_empty else "skip")
    detector = PatternDetector(FeatureExtractor(method=args.method, nfeatures=args.nfeatures), config=config)
    patterns = detector.build_patterns_from_images(images, names=names)
    for pattern in patterns:
        path = save_pattern(pattern, out / f"{pattern.name}.{args.format}")
        print(f"[ok] wrote {path} ({pattern.num_features} keypoints, {pattern.size[0]}x{pattern.size[1]})")
    skipped = len(images) - len(patterns)
    if skipped:
        print(f"[warn] skipped {skipped} image(s) without features")


if __name__ == "__main__":
    main()
