from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import yaml

from common.logging_setup import get_logger
from common.types import DetectionResult, ImageFrame, Pattern, PatternTrackingInfo
from common.utils import to_numpy_3x3
from detector.features import FeatureAlgorithm, FeatureExtractor, extract_features
from detector.homography import HomographyResult, refine_matches_with_homography, reprojection_rmse
from detector.matching import PatternMatcher
from detector.patterns import PathLike, PatternBuildError, build_pattern_from_image, load_pattern
from detector.preprocess import to_gray_u8, warp_to_pattern


log = get_logger("detector")

_EMPTY_PATTERN_POLICIES = ("skip", "raise")
_MATCHER_INDEXES = ("bruteforce", "flann")
_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off")


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return True
        if v in _FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


@dataclass
class DetectorConfig:
    """
    Construction-time options of a PatternDetector.

    ratio_test: keep only matches whose best neighbour is 1.5x closer than the second.
    homography_refinement: run the second matching pass on the rectified frame.
    reprojection_threshold: RANSAC inlier tolerance in pixels.
    matcher_index: "bruteforce" or "flann".
    max_workers: thread pool size for the per-pattern fan-out (None = executor default).
    on_empty_pattern: "skip" or "raise" for training images without features.
    strict_refinement: report "not found" instead of falling back to the rough
        homography when the second pass does not converge.
    """
    ratio_test: bool = True
    homography_refinement: bool = True
    reprojection_threshold: float = 3.0
    matcher_index: str = "bruteforce"
    max_workers: Optional[int] = None
    on_empty_pattern: str = "skip"
    strict_refinement: bool = False

    def __post_init__(self) -> None:
        if self.reprojection_threshold <= 0:
            raise ValueError("reprojection_threshold must be > 0")
        if self.matcher_index not in _MATCHER_INDEXES:
            raise ValueError(f"matcher_index must be one of {_MATCHER_INDEXES}")
        if self.on_empty_pattern not in _EMPTY_PATTERN_POLICIES:
            raise ValueError(f"on_empty_pattern must be one of {_EMPTY_PATTERN_POLICIES}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    @classmethod
    def from_dict(cls, d: Optional[Dict]) -> "DetectorConfig":
        d = d or {}
        max_workers = d.get("max_workers")
        return cls(
            ratio_test=_as_bool(d.get("ratio_test"), True),
            homography_refinement=_as_bool(d.get("homography_refinement"), True),
            reprojection_threshold=float(d.get("reprojection_threshold", 3.0)),
            matcher_index=str(d.get("matcher_index", "bruteforce")).lower(),
            max_workers=None if max_workers is None else int(max_workers),
            on_empty_pattern=str(d.get("on_empty_pattern", "skip")).lower(),
            strict_refinement=_as_bool(d.get("strict_refinement"), False),
        )

    @classmethod
    def from_yaml(cls, path: str, section: str = "detector") -> "DetectorConfig":
        with open(path, "r") as f:
            P = yaml.safe_load(f) or {}
        return cls.from_dict(P.get(section, {}))

    def to_dict(self) -> Dict:
        return asdict(self)


class PatternDetector:
    """
    Finds which trained planar pattern is visible in a frame and where.

    Every trained pattern gets its own matcher. `find_pattern` matches the
    frame against all of them concurrently, picks the pattern with the most
    homography inliers and optionally refines the homography with a second
    pass on the frame warped into the pattern's canonical frame.

    `train` must not run concurrently with `find_pattern`; concurrent
    `find_pattern` calls are fine since all per-frame state is local.
    There is no early exit: every pattern is matched on every frame, so the
    cost of a call grows linearly with the number of trained patterns.
    """

    def __init__(
        self,
        detector: Optional[FeatureAlgorithm] = None,
        extractor: Optional[FeatureAlgorithm] = None,
        config: Optional[DetectorConfig] = None,
    ) -> None:
        self.detector = detector if detector is not None else FeatureExtractor()
        self.extractor = extractor
        self.config = config or DetectorConfig()
        self._patterns: List[Pattern] = []
        self._matchers: List[PatternMatcher] = []
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def __enter__(self) -> "PatternDetector":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.max_workers,
                    thread_name_prefix="pattern-match",
                )
            return self._pool

    # -----------------------------
    # Pattern store
    # -----------------------------

    @property
    def patterns(self) -> Tuple[Pattern, ...]:
        return tuple(self._patterns)

    def train(self, patterns: Sequence[Pattern]) -> None:
        """
        Replace the trained set; one matcher per pattern. All patterns with
        features must share one descriptor layout (dtype and width), since
        every matcher is queried with the same frame descriptors.
        """
        patterns = list(patterns)
        layouts = {
            (p.descriptors.dtype.str, int(p.descriptors.shape[1]))
            for p in patterns
            if p.num_features > 0
        }
        if len(layouts) > 1:
            raise ValueError(f"patterns mix descriptor layouts (dtype, width): {sorted(layouts)}")
        matchers = [
            PatternMatcher(
                p.descriptors,
                ratio_test=self.config.ratio_test,
                index=self.config.matcher_index,
            )
            for p in patterns
        ]
        self._patterns = patterns
        self._matchers = matchers
        for i, p in enumerate(patterns):
            log.info(
                "Trained pattern",
                extra={"extra": {"idx": i, "name": p.name, "size": list(p.size), "keypoints": p.num_features}},
            )

    def build_patterns_from_images(
        self,
        images: Sequence[np.ndarray],
        names: Optional[Sequence[str]] = None,
    ) -> List[Pattern]:
        """
        Build patterns from reference images. Images without features are
        skipped or raise PatternBuildError depending on config.on_empty_pattern.
        """
        if names is not None and len(names) != len(images):
            raise ValueError("names must match images in length")
        patterns: List[Pattern] = []
        for i, image in enumerate(images):
            name = names[i] if names is not None else f"pattern_{i}"
            pattern = build_pattern_from_image(image, self.detector, name=name, extractor=self.extractor)
            if pattern is None:
                if self.config.on_empty_pattern == "raise":
                    raise PatternBuildError(f"No features found in pattern image {i} ({name})")
                log.warning("Skipping pattern without features", extra={"extra": {"idx": i, "name": name}})
                continue
            patterns.append(pattern)
        return patterns

    def build_patterns_from_files(self, paths: Sequence[PathLike]) -> List[Pattern]:
        """Load patterns from their serialized form; no feature extraction."""
        return [load_pattern(p) for p in paths]

    # -----------------------------
    # Matching
    # -----------------------------

    def match(self, query_descriptors: np.ndarray, pattern_idx: int) -> List[cv2.DMatch]:
        return self._matchers[pattern_idx].match(query_descriptors)

    def _match_pattern(
        self,
        query_kps: Sequence[cv2.KeyPoint],
        query_des: np.ndarray,
        pattern_idx: int,
    ) -> HomographyResult:
        matches = self.match(query_des, pattern_idx)
        return refine_matches_with_homography(
            query_kps,
            self._patterns[pattern_idx].keypoints,
            self.config.reprojection_threshold,
            matches,
        )

    def _match_all(self, query_kps: Sequence[cv2.KeyPoint], query_des: np.ndarray) -> List[HomographyResult]:
        slots: List[Optional[HomographyResult]] = [None] * len(self._patterns)

        def task(i: int) -> None:
            slots[i] = self._match_pattern(query_kps, query_des, i)

        pool = self._executor()
        futures = [pool.submit(task, i) for i in range(len(slots))]
        wait(futures)
        for f in futures:
            f.result()
        return slots  # type: ignore[return-value]

    @staticmethod
    def _select(results: Sequence[HomographyResult]) -> int:
        best_idx = -1
        best_count = 0
        for i, r in enumerate(results):
            if r.success and r.inliers > best_count:
                best_count = r.inliers
                best_idx = i
        return best_idx

    def _refine(self, gray: np.ndarray, rough: np.ndarray, pattern_idx: int) -> Optional[np.ndarray]:
        """Second pass on the rectified frame; returns the correction or None."""
        pattern = self._patterns[pattern_idx]
        warped = warp_to_pattern(gray, rough, pattern.size)
        ok, kps, des = extract_features(self.detector, warped, self.extractor)
        if not ok:
            return None
        result = self._match_pattern(kps, des, pattern_idx)
        if not result.success:
            return None
        return result.homography

    # -----------------------------
    # Detection
    # -----------------------------

    def find_pattern(self, image: Union[np.ndarray, ImageFrame]) -> DetectionResult:
        """
        Returns (True, PatternTrackingInfo) when a trained pattern is found,
        (False, None) otherwise.
        """
        if isinstance(image, ImageFrame):
            image = image.frame
        gray = to_gray_u8(image)

        if not self._patterns:
            return False, None

        ok, query_kps, query_des = extract_features(self.detector, gray, self.extractor)
        if not ok:
            log.debug("No features in frame")
            return False, None

        results = self._match_all(query_kps, query_des)
        idx = self._select(results)
        if idx < 0:
            log.debug("No pattern matched", extra={"extra": {"query_keypoints": len(query_kps)}})
            return False, None

        pattern = self._patterns[idx]
        rough = results[idx].homography
        homography = rough
        refined = False

        if self.config.homography_refinement:
            correction = self._refine(gray, rough, idx)
            if correction is not None:
                homography = rough @ correction
                refined = True
            elif self.config.strict_refinement:
                log.debug("Refinement did not converge", extra={"extra": {"idx": idx}})
                return False, None

        corners = cv2.perspectiveTransform(pattern.points2d.reshape(-1, 1, 2), homography).reshape(4, 2)
        info = PatternTrackingInfo(
            pattern_idx=idx,
            homography=to_numpy_3x3(homography),
            points2d=corners.astype(np.float32),
            inliers=results[idx].inliers,
            refined=refined,
            pattern_name=pattern.name,
        )
        if log.isEnabledFor(logging.DEBUG):
            rmse = reprojection_rmse(query_kps, pattern.keypoints, results[idx].matches, rough)
            log.debug(
                "Pattern found",
                extra={"extra": {"idx": idx, "name": pattern.name, "inliers": info.inliers,
                                 "refined": refined, "rmse_px": round(rmse, 3)}},
            )
        return True, info
