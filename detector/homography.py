from __future__ import annotations

from typing import List, Sequence
from dataclasses import dataclass, field

import cv2
import numpy as np


MIN_MATCHES = 25


@dataclass
class HomographyResult:
    """
    Outcome of a robust homography fit.

    `homography` maps train (pattern) points onto query points. `matches` is
    the inlier subset when estimation ran, the untouched input otherwise.
    `success` must be checked; a matrix is always present.
    """
    homography: np.ndarray
    matches: List[cv2.DMatch]
    success: bool
    inlier_mask: np.ndarray = field(repr=False)

    @property
    def inliers(self) -> int:
        return len(self.matches)


def _points(
    query_kps: Sequence[cv2.KeyPoint],
    train_kps: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
):
    src = np.float32([train_kps[m.trainIdx].pt for m in matches]).reshape(-1, 1, 2)
    dst = np.float32([query_kps[m.queryIdx].pt for m in matches]).reshape(-1, 1, 2)
    return src, dst


def refine_matches_with_homography(
    query_kps: Sequence[cv2.KeyPoint],
    train_kps: Sequence[cv2.KeyPoint],
    reprojection_threshold: float,
    matches: Sequence[cv2.DMatch],
) -> HomographyResult:
    """
    Estimate pattern -> query homography with RANSAC and prune outlier matches.

    Fewer than MIN_MATCHES correspondences fail immediately. A degenerate
    estimate is replaced by the identity (with no inliers). Success requires
    strictly more than MIN_MATCHES inliers.
    """
    matches = list(matches)
    if len(matches) < MIN_MATCHES:
        return HomographyResult(np.eye(3, dtype=np.float64), matches, False, np.zeros((0,), dtype=bool))

    src, dst = _points(query_kps, train_kps, matches)
    H, mask = cv2.findHomography(src, dst, cv2.RANSAC, float(reprojection_threshold))

    if H is None or H.size == 0:
        H = np.eye(3, dtype=np.float64)
        mask = None

    if mask is None:
        inlier_mask = np.zeros((len(matches),), dtype=bool)
    else:
        inlier_mask = mask.ravel().astype(bool)

    inliers = [m for m, keep in zip(matches, inlier_mask) if keep]
    return HomographyResult(
        np.asarray(H, dtype=np.float64),
        inliers,
        len(inliers) > MIN_MATCHES,
        inlier_mask,
    )


def reprojection_rmse(
    query_kps: Sequence[cv2.KeyPoint],
    train_kps: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
    H: np.ndarray,
) -> float:
    """RMSE (pixels) of train points projected through H against query points."""
    if len(matches) == 0:
        return float("inf")
    src, dst = _points(query_kps, train_kps, matches)
    proj = cv2.perspectiveTransform(src, H)
    err = np.linalg.norm(proj.reshape(-1, 2) - dst.reshape(-1, 2), axis=1)
    return float(np.sqrt(np.mean(err ** 2)))
