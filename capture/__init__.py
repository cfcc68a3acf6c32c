"""
Frame sources for the pattern detector (video files, webcams, image folders).
"""
from .camera import VideoFrameSource, ImageFolderSource, annotate_frame

__all__ = ["VideoFrameSource", "ImageFolderSource", "annotate_frame"]
