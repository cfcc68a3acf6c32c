from __future__ import annotations
"""
Pattern construction and serialization.

A pattern file is an OpenCV FileStorage document (YAML, XML or JSON chosen
by extension) with the fields:

    width, height   canonical pattern size in pixels
    keypoints       x, y, size, angle, response, octave, class_id per keypoint,
                    either as OpenCV's native keypoint sequence or an Nx7 matrix
    descriptors     NxD descriptor matrix, row i belongs to keypoint i
"""

from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

import cv2
import numpy as np

from common.types import Pattern
from detector.features import FeatureAlgorithm, extract_features
from detector.preprocess import to_gray_u8


KEYPOINT_FIELDS = 7

PathLike = Union[str, Path]


class PatternBuildError(ValueError):
    """A training image produced no usable features."""


class PatternFileError(IOError):
    """A serialized pattern could not be read or written."""


# -----------------------------
# From images
# -----------------------------

def build_pattern_from_image(
    image: np.ndarray,
    algorithm: FeatureAlgorithm,
    name: str = "",
    extractor: Optional[FeatureAlgorithm] = None,
) -> Optional[Pattern]:
    """
    Train a single pattern from an image (gray, BGR or BGRA).
    Returns None when no keypoints are found.
    """
    if image is None or image.size == 0:
        raise ValueError("empty pattern image")
    h, w = image.shape[:2]
    gray = to_gray_u8(image)
    ok, kps, des = extract_features(algorithm, gray, extractor)
    if not ok:
        return None
    return Pattern.from_geometry(w, h, kps, des, name=name)


# -----------------------------
# Serialized form
# -----------------------------

def _keypoints_to_array(keypoints: Sequence[cv2.KeyPoint]) -> np.ndarray:
    rows = [
        (kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave, kp.class_id)
        for kp in keypoints
    ]
    return np.array(rows, dtype=np.float32).reshape(-1, KEYPOINT_FIELDS)


def _keypoints_from_array(arr: np.ndarray) -> List[cv2.KeyPoint]:
    arr = np.asarray(arr, dtype=np.float64)
    if arr.size % KEYPOINT_FIELDS != 0:
        raise PatternFileError(f"keypoint data length {arr.size} is not a multiple of {KEYPOINT_FIELDS}")
    return [
        cv2.KeyPoint(float(x), float(y), float(size), float(angle), float(response), int(octave), int(class_id))
        for x, y, size, angle, response, octave, class_id in arr.reshape(-1, KEYPOINT_FIELDS)
    ]


def _flatten_numbers(node) -> Iterator[float]:
    if node.isSeq():
        for i in range(node.size()):
            yield from _flatten_numbers(node.at(i))
    elif node.isInt() or node.isReal():
        yield node.real()


def _read_keypoints(node) -> List[cv2.KeyPoint]:
    if node.empty() or node.isNone():
        return []
    if node.isSeq():
        return _keypoints_from_array(np.fromiter(_flatten_numbers(node), dtype=np.float64))
    mat = node.mat()
    if mat is None:
        return []
    return _keypoints_from_array(mat)


def save_pattern(pattern: Pattern, path: PathLike) -> Path:
    """Write `pattern` in serialized form; the format follows the file extension."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    if not fs.isOpened():
        raise PatternFileError(f"Cannot open pattern file for writing: {path}")
    try:
        fs.write("width", int(pattern.size[0]))
        fs.write("height", int(pattern.size[1]))
        fs.write("keypoints", _keypoints_to_array(pattern.keypoints))
        fs.write("descriptors", pattern.descriptors)
    finally:
        fs.release()
    return path


def load_pattern(path: PathLike, name: Optional[str] = None) -> Pattern:
    """
    Rebuild a pattern from its serialized form without running feature
    extraction; corners are derived from width/height.
    """
    path = Path(path)
    if not path.is_file():
        raise PatternFileError(f"Pattern file not found: {path}")
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise PatternFileError(f"Cannot open pattern file: {path}")
    try:
        w_node = fs.getNode("width")
        h_node = fs.getNode("height")
        if w_node.empty() or h_node.empty():
            raise PatternFileError(f"{path}: missing width/height")
        w = w_node.real()
        h = h_node.real()
        keypoints = _read_keypoints(fs.getNode("keypoints"))
        des_node = fs.getNode("descriptors")
        descriptors = None if des_node.empty() else des_node.mat()
    finally:
        fs.release()

    if descriptors is None:
        descriptors = np.zeros((0, 32), dtype=np.uint8)
    if len(keypoints) != descriptors.shape[0]:
        raise PatternFileError(
            f"{path}: {len(keypoints)} keypoints but {descriptors.shape[0]} descriptors"
        )
    try:
        return Pattern.from_geometry(w, h, keypoints, descriptors, name=name or path.stem)
    except ValueError as e:
        raise PatternFileError(f"{path}: {e}") from e
