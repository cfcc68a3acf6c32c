"""
Planar pattern detector

This package provides:
- A pluggable feature-extraction adapter (ORB/AKAZE/BRISK or any cv2.Feature2D)
- Pattern training from images and from serialized pattern files
- Per-pattern descriptor matching with an optional ratio test
- RANSAC homography estimation with inlier pruning
- PatternDetector: parallel matching across all trained patterns, best-pattern
  selection and two-stage homography refinement
- Pose recovery of a detected pattern from camera intrinsics

Entry point:
    python -m detector.pipeline --config config/params.yaml --video input.mp4
"""
from .pattern_detector import DetectorConfig, PatternDetector

__all__ = ["DetectorConfig", "PatternDetector"]
