from __future__ import annotations
"""
Feature extraction adapter for the pattern detector.

- FeatureAlgorithm: the detect/compute seam (any cv2.Feature2D fits)
- FeatureExtractor(method='orb'|'akaze'|'brisk') with detect()/compute()
- extract_features(): detect + compute with explicit "no features" outcome
"""

from dataclasses import dataclass
from typing import List, Tuple, Optional, Protocol, Sequence

import cv2
import numpy as np


class FeatureAlgorithm(Protocol):
    def detect(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> Sequence[cv2.KeyPoint]:
        ...

    def compute(
        self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[Sequence[cv2.KeyPoint], Optional[np.ndarray]]:
        ...


# -----------------------------
# Extractors
# -----------------------------

_FACTORIES = {"orb": "ORB_create", "akaze": "AKAZE_create", "brisk": "BRISK_create"}


@dataclass
class FeatureExtractor:
    method: str = "orb"
    nfeatures: int = 1000
    fast_threshold: int = 20
    nlevels: int = 8
    scale_factor: float = 1.2

    def __post_init__(self):
        m = self.method.lower()
        factory = _FACTORIES.get(m)
        if factory is not None and not hasattr(cv2, factory):
            raise ValueError(f"Feature method '{m}' is not available in this OpenCV build (cv2.{factory} missing)")
        if m == "orb":
            self._algo = cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scaleFactor=float(self.scale_factor),
                nlevels=int(self.nlevels),
                edgeThreshold=31,
                firstLevel=0,
                WTA_K=2,
                scoreType=cv2.ORB_HARRIS_SCORE,
                patchSize=31,
                fastThreshold=int(self.fast_threshold),
            )
        elif m == "akaze":
            self._algo = cv2.AKAZE_create(
                descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
                descriptor_size=0,
                descriptor_channels=3,
                threshold=0.001,
                nOctaves=4,
                nOctaveLayers=4,
                diffusivity=cv2.KAZE_DIFF_PM_G2,
            )
        elif m == "brisk":
            self._algo = cv2.BRISK_create(thresh=int(self.fast_threshold), octaves=3)
        else:
            raise ValueError(f"Unsupported method: {self.method}")
        self.method = m
        # All built-in methods produce binary descriptors.
        self.norm_type = cv2.NORM_HAMMING

    @classmethod
    def from_dict(cls, d: dict) -> "FeatureExtractor":
        d = d or {}
        return cls(
            method=str(d.get("method", "orb")),
            nfeatures=int(d.get("nfeatures", 1000)),
            fast_threshold=int(d.get("fast_threshold", 20)),
            nlevels=int(d.get("nlevels", 8)),
            scale_factor=float(d.get("scale_factor", 1.2)),
        )

    def detect(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        return list(self._algo.detect(image, mask))

    def compute(self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]):
        kps, des = self._algo.compute(image, list(keypoints))
        return list(kps), des


def norm_for_descriptors(descriptors: np.ndarray) -> int:
    """Hamming for packed binary descriptors, L2 for float ones."""
    return cv2.NORM_HAMMING if descriptors.dtype == np.uint8 else cv2.NORM_L2


def extract_features(
    algorithm: FeatureAlgorithm,
    gray: np.ndarray,
    extractor: Optional[FeatureAlgorithm] = None,
) -> Tuple[bool, List[cv2.KeyPoint], np.ndarray]:
    """
    Detect keypoints and compute their descriptors on a single-channel image.

    `extractor` computes the descriptors when given, otherwise `algorithm`
    does both. Returns (ok, keypoints, descriptors); ok is False when no
    keypoints survive detection or description.
    """
    if gray is None or gray.size == 0:
        raise ValueError("empty image")
    if gray.ndim != 2:
        raise ValueError("extract_features expects a single-channel image")

    empty = np.zeros((0, 32), dtype=np.uint8)
    kps = algorithm.detect(gray, None)
    if not kps:
        return False, [], empty

    kps, des = (extractor or algorithm).compute(gray, kps)
    if kps is None or len(kps) == 0 or des is None:
        return False, [], empty
    return True, list(kps), des
