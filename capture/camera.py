from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

import cv2
import numpy as np

from common.types import ImageFrame
from common.utils import iso_now_ms


@dataclass
class VideoFrameSource:
    """
    Frames from a video file or a webcam.

    Args:
        path: path to a video file, or an int webcam index
        target_fps: if set, throttles output to this FPS (sleeping between frames)
        loop: restart when reaching EOF (video files only)
        resize: (width, height) to resize frames, or None to keep native
        max_frames: stop after this many frames (None = until EOF)
    """
    path: Union[str, int]
    target_fps: Optional[float] = None
    loop: bool = False
    resize: Optional[Tuple[int, int]] = None
    max_frames: Optional[int] = None

    @property
    def source_id(self) -> str:
        if isinstance(self.path, int):
            return f"webcam{self.path}"
        return Path(self.path).name

    def frames(self) -> Iterator[ImageFrame]:
        if not isinstance(self.path, int) and not Path(self.path).exists():
            raise FileNotFoundError(f"Video not found: {self.path}")
        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video source: {self.path}")

        dt_target = None if not self.target_fps or self.target_fps <= 0 else (1.0 / self.target_fps)
        count = 0
        try:
            while self.max_frames is None or count < self.max_frames:
                t_start = time.perf_counter()
                ok, img = cap.read()
                if not ok:
                    if self.loop and not isinstance(self.path, int):
                        cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                        continue
                    break
                if self.resize:
                    w, h = self.resize
                    img = cv2.resize(img, (w, h), interpolation=cv2.INTER_AREA)

                H, W = img.shape[:2]
                yield ImageFrame(ts=iso_now_ms(), width=W, height=H, frame=img, source_id=self.source_id)
                count += 1

                if dt_target:
                    sleep_s = max(0.0, dt_target - (time.perf_counter() - t_start))
                    if sleep_s > 0:
                        time.sleep(sleep_s)
        finally:
            cap.release()


@dataclass
class ImageFolderSource:
    """
    Frames from still images in a directory, in sorted file-name order.

    Args:
        directory: folder to scan
        glob: file pattern (e.g. "*.png")
        max_frames: stop after this many frames (None = all)
    """
    directory: str
    glob: str = "*.png"
    max_frames: Optional[int] = None

    def frames(self) -> Iterator[ImageFrame]:
        root = Path(self.directory)
        if not root.is_dir():
            raise FileNotFoundError(f"Image folder not found: {self.directory}")
        count = 0
        for path in sorted(root.glob(self.glob)):
            if self.max_frames is not None and count >= self.max_frames:
                break
            img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
            if img is None:
                continue
            if img.dtype != np.uint8:
                img = cv2.convertScaleAbs(img, alpha=255.0 / max(1.0, float(img.max())))
            H, W = img.shape[:2]
            yield ImageFrame(ts=iso_now_ms(), width=W, height=H, frame=img, source_id=path.name)
            count += 1


def annotate_frame(img: np.ndarray, corners: Optional[np.ndarray], text: str) -> np.ndarray:
    """Overlay the detected pattern contour and a status line (for preview)."""
    out = img.copy()
    if out.ndim == 2:
        out = cv2.cvtColor(out, cv2.COLOR_GRAY2BGR)
    elif out.shape[2] == 4:
        out = cv2.cvtColor(out, cv2.COLOR_BGRA2BGR)
    if corners is not None:
        pts = np.round(corners.reshape(-1, 1, 2)).astype(np.int32)
        cv2.polylines(out, [pts], isClosed=True, color=(0, 255, 0), thickness=2, lineType=cv2.LINE_AA)
    cv2.rectangle(out, (5, 5), (460, 40), (0, 0, 0), thickness=-1)
    cv2.putText(out, text, (12, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 255), 2, cv2.LINE_AA)
    return out
