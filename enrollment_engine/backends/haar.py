"""Haar cascade face detector using OpenCV.

Lightweight default detector for the face prescan. It needs no model
download: the frontal-face cascade ships with opencv-python.
"""

from __future__ import annotations

from typing import List, Optional

import cv2
import numpy as np

from enrollment_engine.interfaces import BBox, Detection
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CASCADE = "haarcascade_frontalface_default.xml"


class HaarCascadeDetector:
    """Face detector using OpenCV's Haar cascade classifier.

    Haar cascades do not produce confidence scores; every detection is
    reported with score 1.0 and no landmarks.

    Attributes:
        scale_factor: Image pyramid scale step
        min_neighbors: Neighbor rectangles required to keep a detection
        min_size: Smallest face size considered (pixels)
    """

    def __init__(
        self,
        cascade_path: Optional[str] = None,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: int = 40,
    ):
        """Initialize the Haar detector.

        Args:
            cascade_path: Cascade XML file. Defaults to the bundled frontal-face cascade.
            scale_factor: Image pyramid scale step (> 1.0)
            min_neighbors: Neighbor rectangles required to keep a detection
            min_size: Smallest face size considered (pixels)

        Raises:
            RuntimeError: If the cascade cannot be loaded.
        """
        if cascade_path is None:
            cascade_path = cv2.data.haarcascades + DEFAULT_CASCADE

        self.cascade_path = cascade_path
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

        try:
            self.classifier = cv2.CascadeClassifier(cascade_path)
        except cv2.error as e:
            raise RuntimeError(f"Could not load Haar cascade: {cascade_path}") from e
        if self.classifier.empty():
            raise RuntimeError(f"Could not load Haar cascade: {cascade_path}")

        logger.info(f"Initialized Haar cascade detector ({cascade_path})")

    def detect(self, frame_bgr: np.ndarray) -> List[Detection]:
        """Detect faces in a BGR image.

        Returns:
            List of Detection objects, largest first. Empty if none found.
        """
        if frame_bgr is None or frame_bgr.size == 0:
            logger.warning("Empty frame provided to detector")
            return []

        if len(frame_bgr.shape) == 3:
            gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame_bgr

        rects = self.classifier.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_size, self.min_size),
        )

        detections = [
            Detection(bbox=BBox(x1=int(x), y1=int(y), x2=int(x + w), y2=int(y + h)), score=1.0)
            for (x, y, w, h) in rects
        ]
        detections.sort(key=lambda d: d.bbox.area, reverse=True)
        return detections

    def __repr__(self) -> str:
        return (
            f"HaarCascadeDetector(scale_factor={self.scale_factor}, "
            f"min_neighbors={self.min_neighbors}, min_size={self.min_size})"
        )
