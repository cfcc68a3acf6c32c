"""
Unit tests for PatternDetector (training, parallel matching, refinement)
"""

import pytest
import numpy as np
import cv2
import os
import sys
from concurrent.futures import ThreadPoolExecutor

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import ImageFrame, Pattern
from detector import pattern_detector
from detector.features import FeatureExtractor
from detector.homography import HomographyResult
from detector.pattern_detector import DetectorConfig, PatternDetector
from detector.synthetic import render_scene, synthesize_pattern

SCENE_CORNERS = np.float32([[120, 90], [500, 110], [490, 400], [110, 380]])


def _trained(images, extractor, **cfg):
    detector = PatternDetector(extractor, config=DetectorConfig(**cfg))
    detector.train(detector.build_patterns_from_images(images))
    return detector


def _corner_error(info):
    return float(np.max(np.linalg.norm(info.points2d - SCENE_CORNERS, axis=1)))


class TestDetectorConfig:
    """Test cases for DetectorConfig"""

    def test_defaults(self):
        """Ratio test and refinement on, 3 px threshold"""
        cfg = DetectorConfig()
        assert cfg.ratio_test is True
        assert cfg.homography_refinement is True
        assert cfg.reprojection_threshold == 3.0
        assert cfg.on_empty_pattern == "skip"
        assert cfg.strict_refinement is False

    def test_from_dict(self):
        """Values are coerced from plain config dicts"""
        cfg = DetectorConfig.from_dict({
            "ratio_test": False,
            "reprojection_threshold": "2.5",
            "matcher_index": "FLANN",
            "max_workers": 2,
        })
        assert cfg.ratio_test is False
        assert cfg.reprojection_threshold == 2.5
        assert cfg.matcher_index == "flann"
        assert cfg.max_workers == 2

    def test_from_dict_parses_string_booleans(self):
        cfg = DetectorConfig.from_dict({"ratio_test": "false", "homography_refinement": "No", "strict_refinement": "1"})
        assert cfg.ratio_test is False
        assert cfg.homography_refinement is False
        assert cfg.strict_refinement is True
        with pytest.raises(ValueError, match="not a boolean"):
            DetectorConfig.from_dict({"ratio_test": "maybe"})

    def test_from_yaml(self):
        """The shipped params file is valid"""
        cfg = DetectorConfig.from_yaml(os.path.join(project_root, "config", "params.yaml"))
        assert cfg == DetectorConfig()

    @pytest.mark.parametrize("kwargs", [
        {"reprojection_threshold": 0.0},
        {"matcher_index": "annoy"},
        {"on_empty_pattern": "placeholder"},
        {"max_workers": 0},
    ])
    def test_invalid_values_raise(self, kwargs):
        """Bad options fail at construction"""
        with pytest.raises(ValueError):
            DetectorConfig(**kwargs)


class TestTraining:
    """Test cases for PatternDetector.train"""

    def test_train_replaces_previous_set(self, pattern_image, other_pattern_image, extractor):
        """Retraining replaces patterns and matchers"""
        detector = _trained([pattern_image, other_pattern_image], extractor)
        assert len(detector.patterns) == 2

        detector.train(detector.patterns[1:])
        assert len(detector.patterns) == 1
        assert detector.patterns[0].name == "pattern_1"
        detector.close()

    def test_retraining_is_idempotent(self, pattern_image, scene, extractor):
        """Same patterns, same query, same matches"""
        detector = PatternDetector(extractor)
        patterns = detector.build_patterns_from_images([pattern_image])
        gray = cv2.cvtColor(scene, cv2.COLOR_BGR2GRAY)
        _, des = extractor.compute(gray, extractor.detect(gray))

        detector.train(patterns)
        first = detector.match(des, 0)
        detector.train(patterns)
        second = detector.match(des, 0)

        key = lambda ms: sorted((m.queryIdx, m.trainIdx, m.distance) for m in ms)
        assert len(first) > 0
        assert key(first) == key(second)

    def test_mixed_descriptor_widths_are_rejected(self, pattern_image, extractor):
        """Patterns from different extractors cannot share one query"""
        detector = PatternDetector(extractor)
        orb_pattern = detector.build_patterns_from_images([pattern_image])[0]
        rng = np.random.default_rng(7)
        kps = [cv2.KeyPoint(float(i), float(i), 5.0) for i in range(40)]
        wide = Pattern.from_geometry(100, 100, kps, rng.integers(0, 256, (40, 61), dtype=np.uint8), name="akaze")

        with pytest.raises(ValueError, match="descriptor layouts"):
            detector.train([wide, orb_pattern])
        assert detector.patterns == ()

    def test_empty_pattern_does_not_constrain_layout(self, pattern_image, extractor):
        detector = PatternDetector(extractor)
        orb_pattern = detector.build_patterns_from_images([pattern_image])[0]
        empty = Pattern.from_geometry(50, 50, [], np.zeros((0, 61), np.uint8), name="empty")
        detector.train([empty, orb_pattern])
        assert len(detector.patterns) == 2

    def test_untrained_detector_finds_nothing(self, scene, extractor):
        """No patterns is a plain "not found" """
        with PatternDetector(extractor) as detector:
            assert detector.find_pattern(scene) == (False, None)


class TestSelection:
    """Test cases for PatternDetector._select"""

    def _slot(self, n, success):
        matches = [cv2.DMatch(i, i, 0.0) for i in range(n)]
        return HomographyResult(np.eye(3), matches, success, np.ones(n, dtype=bool))

    def test_ties_go_to_the_lowest_index(self):
        """A failed slot is ignored however many matches it has"""
        slots = [self._slot(26, False), self._slot(30, True), self._slot(30, True)]
        assert PatternDetector._select(slots) == 1

    def test_most_inliers_wins(self):
        slots = [self._slot(27, True), self._slot(40, False), self._slot(31, True)]
        assert PatternDetector._select(slots) == 2

    def test_no_successful_slot(self):
        assert PatternDetector._select([self._slot(26, False), self._slot(10, False)]) == -1
        assert PatternDetector._select([]) == -1


class TestFindPattern:
    """Test cases for PatternDetector.find_pattern"""

    def test_finds_pattern_with_refinement(self, pattern_image, scene, extractor):
        """Two-stage refinement locates the marker corners"""
        with _trained([pattern_image], extractor) as detector:
            found, info = detector.find_pattern(scene)

        assert found is True
        assert info.pattern_idx == 0
        assert info.pattern_name == "pattern_0"
        assert info.refined is True
        assert info.inliers > 25
        assert info.homography.shape == (3, 3)
        assert info.points2d.shape == (4, 2)
        assert _corner_error(info) < 4.0

    def test_finds_pattern_without_refinement(self, pattern_image, scene, extractor):
        """Rough homography alone is used when refinement is off"""
        with _trained([pattern_image], extractor, homography_refinement=False) as detector:
            found, info = detector.find_pattern(scene)

        assert found is True
        assert info.refined is False
        assert _corner_error(info) < 4.0
        projected = cv2.perspectiveTransform(
            np.float32([[0, 0], [400, 0], [400, 300], [0, 300]]).reshape(-1, 1, 2), info.homography
        ).reshape(4, 2)
        assert np.allclose(projected, info.points2d, atol=1e-3)

    def test_debug_log_reports_reprojection_error(self, pattern_image, scene, extractor, caplog):
        caplog.set_level("DEBUG", logger="detector")
        with _trained([pattern_image], extractor) as detector:
            assert detector.find_pattern(scene)[0] is True

        found = [r for r in caplog.records if r.getMessage() == "Pattern found"]
        assert len(found) == 1
        assert found[0].extra["rmse_px"] < 3.0

    def test_plain_matching_mode(self, pattern_image, scene, extractor):
        """Detection also works without the ratio test"""
        with _trained([pattern_image], extractor, ratio_test=False) as detector:
            found, info = detector.find_pattern(scene)

        assert found is True
        assert _corner_error(info) < 4.0

    def test_accepts_image_frames_and_gray(self, pattern_image, scene, extractor):
        """ImageFrame and single-channel inputs are handled"""
        gray = cv2.cvtColor(scene, cv2.COLOR_BGR2GRAY)
        frame = ImageFrame(ts="2024-01-01T00:00:00Z", width=640, height=480, frame=scene)
        with _trained([pattern_image], extractor) as detector:
            assert detector.find_pattern(gray)[0] is True
            assert detector.find_pattern(frame)[0] is True

    def test_selects_the_visible_pattern(self, pattern_image, other_pattern_image, scene, extractor):
        """The pattern with the most inliers wins"""
        third = synthesize_pattern((300, 300), seed=3)
        with _trained([other_pattern_image, third, pattern_image], extractor, max_workers=3) as detector:
            found, info = detector.find_pattern(scene)

        assert found is True
        assert info.pattern_idx == 2

    def test_blank_frame_is_not_found(self, pattern_image, extractor):
        """No query features, no detection, no exception"""
        blank = np.full((480, 640, 3), 90, np.uint8)
        with _trained([pattern_image], extractor) as detector:
            assert detector.find_pattern(blank) == (False, None)

    def test_unrelated_frame_is_not_found(self, pattern_image, extractor):
        """A textured frame without the marker is "not found" """
        unrelated = synthesize_pattern((640, 480), seed=99)
        with _trained([pattern_image], extractor) as detector:
            assert detector.find_pattern(unrelated) == (False, None)

    def test_concurrent_calls_agree(self, pattern_image, scene, extractor):
        """Per-call state is local, so parallel callers get the same answer"""
        with _trained([pattern_image], extractor) as detector:
            with ThreadPoolExecutor(max_workers=4) as pool:
                results = list(pool.map(detector.find_pattern, [scene] * 4))

        assert all(found for found, _ in results)
        assert len({info.pattern_idx for _, info in results}) == 1
        ref = results[0][1].points2d
        assert all(np.allclose(info.points2d, ref, atol=1e-3) for _, info in results)


class TestRefinementFallback:
    """Test cases for a second pass that does not converge"""

    @pytest.fixture
    def blank_warp(self, monkeypatch):
        def fake_warp(gray, homography, size):
            return np.zeros((size[1], size[0]), np.uint8)
        monkeypatch.setattr(pattern_detector, "warp_to_pattern", fake_warp)

    def test_degraded_success_keeps_rough_homography(self, pattern_image, scene, extractor, blank_warp):
        """Default policy falls back to the rough homography"""
        with _trained([pattern_image], extractor) as detector:
            found, info = detector.find_pattern(scene)
        with _trained([pattern_image], extractor, homography_refinement=False) as detector:
            _, rough = detector.find_pattern(scene)

        assert found is True
        assert info.refined is False
        assert np.allclose(info.homography, rough.homography)

    def test_strict_policy_reports_not_found(self, pattern_image, scene, extractor, blank_warp):
        """Strict policy turns a failed second pass into "not found" """
        with _trained([pattern_image], extractor, strict_refinement=True) as detector:
            assert detector.find_pattern(scene) == (False, None)

    def test_strict_policy_succeeds_when_refinement_converges(self, pattern_image, scene, extractor):
        """Strict policy does not affect a converging second pass"""
        with _trained([pattern_image], extractor, strict_refinement=True) as detector:
            found, info = detector.find_pattern(scene)
        assert found is True
        assert info.refined is True


class TestCustomFeatureAlgorithms:
    """Test cases for the detect/compute seam"""

    def test_raw_opencv_feature2d(self, pattern_image, scene):
        """A bare cv2.Feature2D plugs in as detector and extractor"""
        orb = cv2.ORB_create(nfeatures=1000)
        detector = PatternDetector(detector=orb, extractor=orb)
        detector.train(detector.build_patterns_from_images([pattern_image]))
        found, info = detector.find_pattern(scene)
        detector.close()

        assert found is True
        assert _corner_error(info) < 4.0

    @pytest.mark.skipif(not hasattr(cv2, "AKAZE_create"), reason="AKAZE not in this OpenCV build")
    def test_akaze_extractor(self, pattern_image, scene):
        """AKAZE binary descriptors work end to end"""
        with _trained([pattern_image], FeatureExtractor(method="akaze")) as detector:
            found, info = detector.find_pattern(scene)
        assert found is True
        assert _corner_error(info) < 6.0

    def test_unknown_method_raises(self):
        """Only known OpenCV algorithms are built"""
        with pytest.raises(ValueError, match="Unsupported method"):
            FeatureExtractor(method="superpoint")

    def test_missing_opencv_algorithm_raises(self, monkeypatch):
        """An OpenCV build lacking the algorithm fails with a clear message"""
        monkeypatch.delattr(cv2, "BRISK_create", raising=False)
        with pytest.raises(ValueError, match="BRISK_create"):
            FeatureExtractor(method="brisk")
