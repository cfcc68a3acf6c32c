from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict, Sequence
import cv2
import numpy as np


IsoTime = str


def corner_geometry(width: float, height: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Canonical contours of a planar pattern.

    Returns (points2d, points3d):
        points2d: (4,2) float32 pixel corners, clockwise from the origin.
        points3d: (4,3) float32 corners on the z=0 plane, the larger side
                  spanning [-1, 1].
    """
    w = float(width)
    h = float(height)
    if w <= 0 or h <= 0:
        raise ValueError("pattern width/height must be > 0")
    max_size = max(w, h)
    unit_w = w / max_size
    unit_h = h / max_size

    points2d = np.array([[0.0, 0.0],
                         [w, 0.0],
                         [w, h],
                         [0.0, h]], dtype=np.float32)
    points3d = np.array([[-unit_w, -unit_h, 0.0],
                         [unit_w, -unit_h, 0.0],
                         [unit_w, unit_h, 0.0],
                         [-unit_w, unit_h, 0.0]], dtype=np.float32)
    return points2d, points3d


@dataclass(slots=True)
class ImageFrame:
    """
    Represents a single camera image handed to the detector.

    Attributes:
        ts: ISO-8601 (UTC) timestamp string.
        width, height: image dimensions in pixels.
        frame: np.ndarray of shape (H,W) or (H,W,C), dtype uint8.
        source_id: logical ID for the frame source.
    """
    ts: IsoTime
    width: int
    height: int
    frame: np.ndarray
    source_id: str = "cam0"

    def __post_init__(self) -> None:
        if not isinstance(self.frame, np.ndarray):
            raise TypeError("frame must be a numpy ndarray")
        if self.frame.ndim not in (2, 3):
            raise ValueError("frame must be 2D (gray) or 3D (BGR/BGRA)")
        if self.frame.shape[0] != self.height or self.frame.shape[1] != self.width:
            raise ValueError("width/height do not match frame shape")
        if self.frame.dtype != np.uint8:
            self.frame = self.frame.astype(np.uint8, copy=False)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "ts": self.ts,
            "width": self.width,
            "height": self.height,
            "channels": None if self.frame.ndim == 2 else self.frame.shape[2],
            "source_id": self.source_id,
        }


@dataclass(frozen=True)
class Pattern:
    """
    A trained reference marker.

    Attributes:
        size: (width, height) of the canonical pattern image.
        points2d: (4,2) corners in canonical pixel space.
        points3d: (4,3) corners on a unit-scaled z=0 plane (for pose recovery).
        keypoints: feature locations found on the pattern image.
        descriptors: (N, D) descriptors, row i belongs to keypoints[i].
        name: label used in logs and to map back to the pattern source.
    """
    size: Tuple[int, int]
    points2d: np.ndarray = field(repr=False)
    points3d: np.ndarray = field(repr=False)
    keypoints: Tuple[cv2.KeyPoint, ...] = field(repr=False)
    descriptors: np.ndarray = field(repr=False)
    name: str = ""

    def __post_init__(self) -> None:
        if len(self.keypoints) != self.descriptors.shape[0]:
            raise ValueError(
                f"keypoints/descriptors mismatch: {len(self.keypoints)} vs {self.descriptors.shape[0]}"
            )
        if self.points2d.shape != (4, 2) or self.points3d.shape != (4, 3):
            raise ValueError("pattern must have exactly 4 corners")

    @classmethod
    def from_geometry(
        cls,
        width: float,
        height: float,
        keypoints: Sequence[cv2.KeyPoint],
        descriptors: np.ndarray,
        name: str = "",
    ) -> "Pattern":
        points2d, points3d = corner_geometry(width, height)
        return cls(
            size=(int(round(width)), int(round(height))),
            points2d=points2d,
            points3d=points3d,
            keypoints=tuple(keypoints),
            descriptors=descriptors,
            name=name,
        )

    @property
    def num_features(self) -> int:
        return len(self.keypoints)


@dataclass(slots=True)
class PatternTrackingInfo:
    """
    Result of a successful detection.

    Attributes:
        pattern_idx: index of the matched pattern in the trained collection.
        homography: 3x3 transform mapping pattern pixels into the query frame.
        points2d: (4,2) pattern corners transformed into the query frame.
        inliers: inlier count of the rough (first) matching stage.
        refined: True if the warped second pass contributed to `homography`.
        pattern_name: name of the matched pattern.
    """
    pattern_idx: int
    homography: np.ndarray = field(repr=False)
    points2d: np.ndarray
    inliers: int = 0
    refined: bool = False
    pattern_name: str = ""

    def __post_init__(self) -> None:
        if self.homography.shape != (3, 3):
            raise ValueError("homography must be 3x3")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_idx": int(self.pattern_idx),
            "pattern_name": self.pattern_name,
            "homography": self.homography.tolist(),
            "points2d": self.points2d.reshape(-1, 2).tolist(),
            "inliers": int(self.inliers),
            "refined": bool(self.refined),
        }


@dataclass(slots=True)
class Pose:
    """
    Pattern pose in camera coordinates (pattern plane units from points3d).

    Attributes:
        rvec: (3,1) Rodrigues rotation vector.
        tvec: (3,1) translation.
        rotation: (3,3) rotation matrix.
    """
    rvec: np.ndarray
    tvec: np.ndarray
    rotation: np.ndarray = field(repr=False)

    def matrix(self) -> np.ndarray:
        """4x4 pattern -> camera transform."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.tvec.reshape(3)
        return T

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rvec": self.rvec.reshape(3).tolist(),
            "tvec": self.tvec.reshape(3).tolist(),
        }


DetectionResult = Tuple[bool, Optional[PatternTrackingInfo]]
