from __future__ import annotations
"""
Synthetic markers and scenes for demos and tests.
"""

from typing import Tuple

import cv2
import numpy as np


def synthesize_pattern(size: Tuple[int, int] = (400, 300), seed: int = 1234, block: int = 10) -> np.ndarray:
    """Generate a feature-rich BGR marker (random blocks and shapes)."""
    w, h = size
    rng = np.random.default_rng(seed)
    cells = rng.integers(0, 256, size=(h // block + 1, w // block + 1), dtype=np.uint8)
    gray = cv2.resize(cells, (cells.shape[1] * block, cells.shape[0] * block), interpolation=cv2.INTER_NEAREST)
    base = cv2.cvtColor(np.ascontiguousarray(gray[:h, :w]), cv2.COLOR_GRAY2BGR)

    for _ in range(25):
        x1, y1 = int(rng.integers(0, w)), int(rng.integers(0, h))
        x2, y2 = int(rng.integers(0, w)), int(rng.integers(0, h))
        color = tuple(int(c) for c in rng.integers(0, 256, size=3))
        cv2.rectangle(base, (min(x1, x2), min(y1, y2)), (max(x1, x2), max(y1, y2)), color, 2)
    for _ in range(15):
        center = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        r = int(rng.integers(6, max(7, min(w, h) // 8)))
        color = tuple(int(c) for c in rng.integers(0, 256, size=3))
        cv2.circle(base, center, r, color, -1)

    return base


def render_scene(
    pattern: np.ndarray,
    homography: np.ndarray,
    frame_size: Tuple[int, int] = (640, 480),
    background: int = 90,
) -> np.ndarray:
    """
    Paste `pattern` into a flat frame of `frame_size` (width, height) through
    `homography` (pattern pixels -> frame pixels).
    """
    w, h = frame_size
    channels = pattern.shape[2] if pattern.ndim == 3 else None
    shape = (h, w) if channels is None else (h, w, channels)
    frame = np.full(shape, background, dtype=np.uint8)
    cv2.warpPerspective(
        pattern, homography, (w, h), dst=frame,
        flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_TRANSPARENT,
    )
    return frame


def perspective_homography(
    pattern_size: Tuple[int, int],
    corners: np.ndarray,
) -> np.ndarray:
    """Homography taking the pattern's canonical corners onto `corners` (4x2)."""
    w, h = pattern_size
    src = np.float32([[0, 0], [w, 0], [w, h], [0, h]])
    return cv2.getPerspectiveTransform(src, np.float32(corners).reshape(4, 2)).astype(np.float64)
