import glob
import os
from typing import Generator, List

import cv2
import numpy as np

IMAGE_PATTERNS = ("*.png", "*.jpg", "*.jpeg", "*.bmp", "*.tif", "*.tiff")


def source_frames(path: str) -> Generator[np.ndarray, None, None]:
    """BGR frames from an image folder (sorted by name) or from a video file."""
    if os.path.isdir(path):
        files: List[str] = []
        for pattern in IMAGE_PATTERNS:
            files.extend(glob.glob(os.path.join(path, pattern)))
        if not files:
            raise RuntimeError(f"No images found in: {path}")
        for fp in sorted(files):
            img = cv2.imread(fp, cv2.IMREAD_COLOR)
            if img is not None:
                yield img
        return

    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise RuntimeError(f"Cannot open video: {path}")
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            yield frame
    finally:
        cap.release()
