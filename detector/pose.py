from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from common.types import Pattern, PatternTrackingInfo, Pose
from detector.preprocess import CameraModel


def estimate_pose(
    pattern: Pattern,
    info: PatternTrackingInfo,
    camera: CameraModel,
) -> Optional[Pose]:
    """
    Pose of a detected pattern from its 3D unit-plane corners and the
    detected 2D corners. Returns None if solvePnP fails.
    """
    obj = pattern.points3d.reshape(-1, 1, 3).astype(np.float64)
    img = info.points2d.reshape(-1, 1, 2).astype(np.float64)
    success, rvec, tvec = cv2.solvePnP(obj, img, camera.K, camera.dist, flags=cv2.SOLVEPNP_ITERATIVE)
    if not success:
        return None
    R, _ = cv2.Rodrigues(rvec)
    return Pose(rvec=rvec.reshape(3, 1), tvec=tvec.reshape(3, 1), rotation=R)
