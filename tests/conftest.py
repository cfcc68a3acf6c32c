"""
Shared fixtures: synthetic markers and scenes with known homographies.
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from detector.features import FeatureExtractor
from detector.synthetic import perspective_homography, render_scene, synthesize_pattern

PATTERN_SIZE = (400, 300)
FRAME_SIZE = (640, 480)
SCENE_CORNERS = np.float32([[120, 90], [500, 110], [490, 400], [110, 380]])


@pytest.fixture(scope="session")
def pattern_image():
    return synthesize_pattern(PATTERN_SIZE, seed=1)


@pytest.fixture(scope="session")
def other_pattern_image():
    return synthesize_pattern(PATTERN_SIZE, seed=2)


@pytest.fixture(scope="session")
def scene_homography():
    return perspective_homography(PATTERN_SIZE, SCENE_CORNERS)


@pytest.fixture(scope="session")
def scene(pattern_image, scene_homography):
    return render_scene(pattern_image, scene_homography, FRAME_SIZE)


@pytest.fixture
def extractor():
    return FeatureExtractor(method="orb", nfeatures=1000)
