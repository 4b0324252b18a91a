"""Advisory face prescan over encoded images.

The prescanner decodes an encoded image with OpenCV, runs a face Detector
on it and reports how many faces were found and how much of the frame the
largest one covers. Results are advisory: the terminal performs its own
authoritative face check during face merge.
"""

from __future__ import annotations

import cv2
import numpy as np

from enrollment_engine.interfaces import Detector, FacePrescan, image_shape
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)


class DetectorFacePrescanner:
    """FacePrescanner backed by any Detector implementation.

    Attributes:
        detector: Face detector used on the decoded image
        min_score: Detections below this confidence are ignored

    Example:
        >>> prescanner = DetectorFacePrescanner(HaarCascadeDetector())
        >>> result = prescanner.prescan(jpeg_bytes)
        >>> print(result.count, f"{result.ratio:.2f}")
    """

    def __init__(self, detector: Detector, min_score: float = 0.5):
        self.detector = detector
        self.min_score = min_score

    def prescan(self, image_bytes: bytes) -> FacePrescan:
        """Count faces in an encoded image.

        Args:
            image_bytes: Encoded image (JPEG, PNG, ...)

        Returns:
            FacePrescan with face count and largest-face area ratio.

        Raises:
            ValueError: If the bytes cannot be decoded as an image.
        """
        frame = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
        if frame is None or frame.size == 0:
            raise ValueError("Image bytes could not be decoded for face prescan")

        detections = [d for d in self.detector.detect(frame) if d.score >= self.min_score]

        h, w = image_shape(frame)
        frame_area = float(h * w)
        largest = max((d.bbox.clamp(w, h).area for d in detections), default=0)
        ratio = largest / frame_area if frame_area > 0 else 0.0

        logger.debug(f"Prescan on {w}x{h} image: {len(detections)} faces, ratio={ratio:.3f}")
        return FacePrescan(count=len(detections), ratio=min(ratio, 1.0))

    def __repr__(self) -> str:
        return f"DetectorFacePrescanner(detector={self.detector!r}, min_score={self.min_score})"
