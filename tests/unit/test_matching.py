"""
Unit tests for per-pattern descriptor matching
"""

import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from detector.matching import MIN_RATIO, PatternMatcher, ratio_filter


def _binary_set(seed=0, n_train=200, n_copies=60, n_random=60):
    """Train descriptors and a query mixing near-copies with unrelated rows."""
    rng = np.random.default_rng(seed)
    train = rng.integers(0, 256, size=(n_train, 32), dtype=np.uint8)
    copies = train[:n_copies].copy()
    # Flip one bit per copy
    copies[:, 0] ^= np.uint8(1)
    noise = rng.integers(0, 256, size=(n_random, 32), dtype=np.uint8)
    return train, np.vstack([copies, noise])


class TestRatioFilter:
    """Test cases for the ratio test"""

    def test_equal_distances_are_rejected(self):
        """Ratio 1.0 is ambiguous"""
        knn = [[cv2.DMatch(0, 0, 10.0), cv2.DMatch(0, 1, 10.0)]]
        assert ratio_filter(knn) == []

    def test_zero_best_distance_is_accepted(self):
        """An exact match is always distinct when the runner-up is not exact"""
        knn = [[cv2.DMatch(0, 3, 0.0), cv2.DMatch(0, 1, 5.0)]]
        good = ratio_filter(knn)
        assert len(good) == 1
        assert good[0].trainIdx == 3

    def test_both_zero_distances_are_rejected(self):
        """Two exact matches are ambiguous"""
        knn = [[cv2.DMatch(0, 0, 0.0), cv2.DMatch(0, 1, 0.0)]]
        assert ratio_filter(knn) == []

    def test_threshold_is_inverse_of_one_and_a_half(self):
        """Accept below 1/1.5, reject above"""
        assert MIN_RATIO == pytest.approx(2.0 / 3.0)
        knn = [
            [cv2.DMatch(0, 0, 5.9), cv2.DMatch(0, 1, 9.0)],
            [cv2.DMatch(1, 2, 6.1), cv2.DMatch(1, 3, 9.0)],
        ]
        good = ratio_filter(knn)
        assert [m.queryIdx for m in good] == [0]

    def test_single_neighbour_is_dropped(self):
        """Queries without a second neighbour cannot be judged"""
        knn = [[cv2.DMatch(0, 0, 1.0)], []]
        assert ratio_filter(knn) == []


class TestPatternMatcher:
    """Test cases for PatternMatcher"""

    def test_plain_mode_one_match_per_query(self):
        """Plain nearest neighbour maps every query descriptor once"""
        train, query = _binary_set()
        matches = PatternMatcher(train, ratio_test=False).match(query)

        assert len(matches) == len(query)
        assert len({m.queryIdx for m in matches}) == len(query)

    def test_ratio_mode_is_subset_of_plain(self):
        """The ratio test only filters, it never adds"""
        train, query = _binary_set(seed=1)
        plain = PatternMatcher(train, ratio_test=False).match(query)
        ratio = PatternMatcher(train, ratio_test=True).match(query)

        assert len(ratio) <= len(plain)
        plain_pairs = {(m.queryIdx, m.trainIdx) for m in plain}
        assert all((m.queryIdx, m.trainIdx) in plain_pairs for m in ratio)

    def test_ratio_mode_keeps_distinct_matches(self):
        """Near-copies pass, unrelated descriptors are mostly rejected"""
        train, query = _binary_set(seed=2)
        ratio = PatternMatcher(train, ratio_test=True).match(query)

        copies = [m for m in ratio if m.queryIdx < 60]
        assert len(copies) == 60
        assert all(m.trainIdx == m.queryIdx for m in copies)
        assert all(m.distance == 1.0 for m in copies)
        assert len(ratio) - len(copies) < 10

    def test_hamming_norm_for_binary(self):
        """uint8 descriptors are matched with Hamming distance"""
        train, _ = _binary_set()
        assert PatternMatcher(train).norm_type == cv2.NORM_HAMMING

    def test_float_descriptors_use_l2(self):
        """Float descriptors are matched with L2 distance"""
        rng = np.random.default_rng(4)
        train = rng.normal(size=(50, 64)).astype(np.float32)
        query = train[:10] + 0.01
        matcher = PatternMatcher(train, ratio_test=True)

        assert matcher.norm_type == cv2.NORM_L2
        matches = matcher.match(query)
        assert sorted(m.trainIdx for m in matches) == list(range(10))

    def test_empty_inputs_return_no_matches(self):
        """Empty query or empty pattern never raise"""
        train, query = _binary_set()
        assert PatternMatcher(train).match(np.zeros((0, 32), np.uint8)) == []
        assert PatternMatcher(np.zeros((0, 32), np.uint8)).match(query) == []

    def test_binary_matcher_rejects_float_query(self):
        """Mixing descriptor kinds is a programming error"""
        train, query = _binary_set()
        with pytest.raises(ValueError):
            PatternMatcher(train).match(query.astype(np.float32))

    def test_query_width_must_match_pattern(self):
        """Descriptors of another extractor are rejected before matching"""
        train, query = _binary_set()
        wide = np.zeros((len(query), 61), np.uint8)
        wide[:, :32] = query
        with pytest.raises(ValueError, match="32-wide"):
            PatternMatcher(train).match(wide)
        with pytest.raises(ValueError, match="32-wide"):
            PatternMatcher(train, ratio_test=False).match(wide)

    def test_rebuilt_matchers_are_idempotent(self):
        """Same descriptors, same query, same matches"""
        train, query = _binary_set(seed=5)
        first = PatternMatcher(train).match(query)
        second = PatternMatcher(train).match(query)

        key = lambda ms: sorted((m.queryIdx, m.trainIdx, m.distance) for m in ms)
        assert key(first) == key(second)

    def test_flann_index_finds_near_copies(self):
        """The approximate LSH index recovers most near-copies"""
        train, query = _binary_set(seed=6)
        matches = PatternMatcher(train, ratio_test=True, index="flann").match(query)

        correct = [m for m in matches if m.queryIdx < 60 and m.trainIdx == m.queryIdx]
        assert len(correct) >= 30

    def test_unknown_index_raises(self):
        """Only bruteforce and flann are supported"""
        train, _ = _binary_set()
        with pytest.raises(ValueError, match="Unsupported matcher index"):
            PatternMatcher(train, index="kdtree-forest")
