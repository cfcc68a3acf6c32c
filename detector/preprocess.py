from __future__ import annotations
"""
Image preparation for the pattern detector:
- Gray conversion for gray/BGR/BGRA frames
- Inverse perspective warp of a frame into a pattern's canonical frame
- Camera intrinsics from YAML (used for pose recovery)
"""

from dataclasses import dataclass
from typing import Tuple, Dict

import cv2
import numpy as np
import yaml


# -----------------------------
# Camera model
# -----------------------------

@dataclass
class CameraModel:
    width: int
    height: int
    K: np.ndarray            # 3x3
    dist: np.ndarray         # (k1,k2,p1,p2,k3)

    @classmethod
    def from_dict(cls, D: Dict) -> "CameraModel":
        """
        Expected fields:
            resolution: {width, height}
            fx, fy, cx, cy, skew
            k1, k2, p1, p2, k3
        """
        W = int(D.get("resolution", {}).get("width", 640))
        H = int(D.get("resolution", {}).get("height", 480))
        fx = float(D.get("fx", 930.0))
        fy = float(D.get("fy", 930.0))
        cx = float(D.get("cx", W / 2.0))
        cy = float(D.get("cy", H / 2.0))
        skew = float(D.get("skew", 0.0))

        K = np.array([[fx, skew, cx],
                      [0.0, fy, cy],
                      [0.0, 0.0, 1.0]], dtype=np.float64)
        dist = np.array([float(D.get(k, 0.0)) for k in ("k1", "k2", "p1", "p2", "k3")], dtype=np.float64)
        return cls(width=W, height=H, K=K, dist=dist)

    @classmethod
    def from_yaml(cls, path: str) -> "CameraModel":
        with open(path, "r") as f:
            D = yaml.safe_load(f) or {}
        return cls.from_dict(D)

    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)


# -----------------------------
# Basic image ops
# -----------------------------

def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.ndim == 3 and img.shape[2] == 1:
        g = img[:, :, 0]
    elif img.ndim == 3 and img.shape[2] == 3:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    elif img.ndim == 3 and img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        raise ValueError(f"Unsupported image shape: {img.shape}")
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def warp_to_pattern(gray: np.ndarray, homography: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """
    Resample `gray` into the pattern frame. `homography` maps pattern -> frame,
    so it is applied as an inverse map; `size` is (width, height).
    """
    w, h = int(size[0]), int(size[1])
    return cv2.warpPerspective(
        gray, homography, (w, h),
        flags=cv2.WARP_INVERSE_MAP | cv2.INTER_CUBIC,
    )
