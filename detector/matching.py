from __future__ import annotations

from typing import List, Optional, Sequence

import cv2
import numpy as np

from detector.features import norm_for_descriptors


# Inverse of the 1.5 distinctness ratio; a zero best distance stays well defined.
MIN_RATIO = 1.0 / 1.5

FLANN_INDEX_KDTREE = 1
FLANN_INDEX_LSH = 6


def ratio_filter(
    knn_matches: Sequence[Sequence[cv2.DMatch]],
    min_ratio: float = MIN_RATIO,
) -> List[cv2.DMatch]:
    """
    Keep the best neighbour of each query when it is decisively closer than
    the second best (best / second < min_ratio).
    """
    good: List[cv2.DMatch] = []
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        best, second = pair[0], pair[1]
        if best.distance < min_ratio * second.distance:
            good.append(best)
    return good


def _make_index(norm_type: int, index: str):
    if index == "bruteforce":
        return cv2.BFMatcher(norm_type, crossCheck=False)
    if index == "flann":
        if norm_type == cv2.NORM_HAMMING:
            index_params = dict(algorithm=FLANN_INDEX_LSH, table_number=6, key_size=12, multi_probe_level=1)
        else:
            index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
        return cv2.FlannBasedMatcher(index_params, dict(checks=50))
    raise ValueError(f"Unsupported matcher index: {index}")


class PatternMatcher:
    """
    Nearest-neighbour index over the descriptors of a single pattern.

    One instance per trained pattern; matches are therefore always expressed
    against that pattern's keypoints (trainIdx indexes pattern.keypoints).
    """

    def __init__(
        self,
        descriptors: np.ndarray,
        *,
        ratio_test: bool = True,
        index: str = "bruteforce",
        norm_type: Optional[int] = None,
    ) -> None:
        self.ratio_test = bool(ratio_test)
        self.index = index
        self.dtype = descriptors.dtype
        self.norm_type = norm_for_descriptors(descriptors) if norm_type is None else int(norm_type)
        self.size = int(descriptors.shape[0]) if descriptors.ndim == 2 else 0
        self.width = int(descriptors.shape[1]) if descriptors.ndim == 2 else 0

        train = descriptors
        if index == "flann" and self.norm_type != cv2.NORM_HAMMING:
            train = descriptors.astype(np.float32)
        self._matcher = _make_index(self.norm_type, index)
        self._matcher.clear()
        if self.size > 0:
            self._matcher.add([train.copy()])
            self._matcher.train()

    def _prepare_query(self, query: np.ndarray) -> np.ndarray:
        if query.ndim != 2 or query.shape[1] != self.width:
            raise ValueError(f"matcher expects {self.width}-wide descriptors, got shape {query.shape}")
        if query.dtype == self.dtype:
            q = query
        elif self.norm_type == cv2.NORM_HAMMING:
            raise ValueError(f"binary matcher expects {self.dtype} descriptors, got {query.dtype}")
        else:
            q = query.astype(self.dtype)
        if self.index == "flann" and self.norm_type != cv2.NORM_HAMMING:
            q = q.astype(np.float32)
        return q

    def knn(self, query_descriptors: np.ndarray, k: int = 2) -> List[List[cv2.DMatch]]:
        if self.size == 0 or query_descriptors is None or len(query_descriptors) == 0:
            return []
        q = self._prepare_query(query_descriptors)
        return [list(m) for m in self._matcher.knnMatch(q, k=k)]

    def match(self, query_descriptors: np.ndarray) -> List[cv2.DMatch]:
        """
        Correspondences query -> pattern; at most one per query descriptor.
        """
        if self.size == 0 or query_descriptors is None or len(query_descriptors) == 0:
            return []
        if self.ratio_test:
            return ratio_filter(self.knn(query_descriptors, k=2))
        q = self._prepare_query(query_descriptors)
        return list(self._matcher.match(q))
