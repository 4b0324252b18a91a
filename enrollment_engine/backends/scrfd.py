"""SCRFD face detector using InsightFace.

Optional, more accurate prescan detector. Requires the ``insightface``
extra (insightface + onnxruntime).
"""

from __future__ import annotations

from typing import List

import numpy as np
from insightface.app import FaceAnalysis

from enrollment_engine.config import Config
from enrollment_engine.interfaces import BBox, Detection
from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)


class SCRFDDetector:
    """Face detector using InsightFace SCRFD model.

    SCRFD provides bounding boxes and 5-point landmarks with confidence
    scores, which makes prescan counts far more reliable than Haar on
    off-angle or poorly lit enrollment photos.

    Attributes:
        app: InsightFace FaceAnalysis instance
        ctx_id: Device context (-1=CPU, 0+=GPU)
        det_size: Detection input size
    """

    def __init__(self, config: Config, det_size: tuple[int, int] = (640, 640)):
        """Initialize SCRFD detector.

        Args:
            config: Configuration object with ctx_id and model_pack
            det_size: Detection input size as (width, height)

        Raises:
            RuntimeError: If model fails to load.
        """
        self.ctx_id = config.ctx_id
        self.det_size = det_size

        logger.info(
            f"Initializing SCRFD detector (model={config.model_pack}, "
            f"device={'GPU:' + str(config.ctx_id) if config.ctx_id >= 0 else 'CPU'}, "
            f"det_size={det_size})"
        )

        try:
            # Only load the detection module, not recognition
            self.app = FaceAnalysis(
                name=config.model_pack,
                allowed_modules=["detection"],
                providers=(
                    ["CUDAExecutionProvider", "CPUExecutionProvider"]
                    if config.ctx_id >= 0
                    else ["CPUExecutionProvider"]
                ),
            )
            self.app.prepare(ctx_id=config.ctx_id, det_size=det_size)
            logger.info("SCRFD detector initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize SCRFD detector: {e}", exc_info=True)
            raise RuntimeError(f"Could not load SCRFD detector: {e}") from e

    def detect(self, frame_bgr: np.ndarray) -> List[Detection]:
        """Detect faces in a BGR image.

        Returns:
            List of Detection objects sorted by confidence (descending).
        """
        if frame_bgr is None or frame_bgr.size == 0:
            logger.warning("Empty frame provided to detector")
            return []

        h, w = frame_bgr.shape[:2]
        detections = []
        for face in self.app.get(frame_bgr):
            x1, y1, x2, y2 = face.bbox.astype(int)
            bbox = BBox(x1=int(x1), y1=int(y1), x2=int(x2), y2=int(y2)).clamp(w, h)
            kps = face.kps.astype(np.float32) if getattr(face, "kps", None) is not None else None
            score = min(max(float(face.det_score), 0.0), 1.0)
            detections.append(Detection(bbox=bbox, score=score, kps=kps))

        detections.sort(key=lambda d: d.score, reverse=True)
        return detections

    def __repr__(self) -> str:
        return f"SCRFDDetector(ctx_id={self.ctx_id}, det_size={self.det_size})"
